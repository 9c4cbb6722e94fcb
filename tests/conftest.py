import pytest

from welcomerpc.serve.server import RPCServer, bind
from welcomerpc.service.service import WelcomeServicer

@pytest.fixture
def server():
    srv = bind('127.0.0.1:0', WelcomeServicer(), drain_timeout_secs=2.0).start()
    yield srv
    srv.stop()

@pytest.fixture
def slow_server():
    """server whose servicer takes 0.5s to answer."""
    srv = bind('127.0.0.1:0', WelcomeServicer(delay_secs=0.5), drain_timeout_secs=2.0).start()
    yield srv
    srv.stop()

def start_server(implementation, **kwargs) -> RPCServer:
    kwargs.setdefault('drain_timeout_secs', 2.0)
    return bind('127.0.0.1:0', implementation, **kwargs).start()
