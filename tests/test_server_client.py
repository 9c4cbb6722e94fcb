import time
import errno
import asyncio
import socket
import threading
import pytest

from concurrent.futures import ThreadPoolExecutor

from welcomerpc.serve.client import Connection, ConnectionState, WelcomeServiceStub, connect, call, close
from welcomerpc.serve.server import RPCServer, bind, serve, stop
from welcomerpc.service.comm import Frame, FrameType, HEADER_SIZE, recv_frame, send_frame
from welcomerpc.service.errors import (EndpointUnavailable, ConnectionFailed, CallTimeout, CallFailed,
                                       MalformedMessage, TransportFailure, StatusCode)
from welcomerpc.service.message import WelcomeRequest, WelcomeResponse
from welcomerpc.service.service import WelcomeService, WelcomeServicer, SEND_WELCOME

from conftest import start_server

def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

def test_end_to_end_lukman():
    try:
        server = bind("127.0.0.1:50051", WelcomeServicer())
    except EndpointUnavailable:
        pytest.skip("port 50051 is in use on this machine")
    with server:
        server.start()
        with connect("127.0.0.1:50051") as connection:
            response = call(connection, WelcomeRequest(name="Lukman"), timeout=2.0)
    assert response == WelcomeResponse(message="Welcome onboard Lukman")

def test_empty_name(server):
    with connect(server.endpoint) as connection:
        assert connection.call(WelcomeRequest(name="")).message == "Welcome onboard "

def test_bound_endpoint_reports_actual_port(server):
    assert server.endpoint.host == "127.0.0.1"
    assert server.endpoint.port > 0
    assert server.serving

def test_connect_without_server():
    port = _free_port()
    with pytest.raises(ConnectionFailed):
        connect(f"127.0.0.1:{port}", timeout=1.0)

def test_connect_unresolvable_host():
    with pytest.raises(ConnectionFailed):
        connect("no-such-host.invalid:50051", timeout=1.0)

def test_bind_is_exclusive(server):
    with pytest.raises(EndpointUnavailable):
        bind(server.endpoint, WelcomeServicer())

def test_endpoint_reusable_after_stop():
    first = start_server(WelcomeServicer())
    endpoint = first.endpoint
    first.stop()
    second = bind(endpoint, WelcomeServicer())
    second.stop()

def test_connection_reused_for_sequential_calls(server):
    with connect(server.endpoint) as connection:
        stub = WelcomeServiceStub(connection)
        for name in ("a", "b", "c"):
            assert stub.send_welcome(WelcomeRequest(name=name)).message == f"Welcome onboard {name}"
        assert connection.state == ConnectionState.OPEN

def test_generic_stub_lookup(server):
    with connect(server.endpoint) as connection:
        stub = WelcomeServiceStub(connection)
        assert stub.invoke("SendWelcome", WelcomeRequest(name="x")).message == "Welcome onboard x"
        with pytest.raises(AttributeError):
            stub.send_goodbye

def test_concurrent_calls_get_their_own_response(server):
    names = [f"caller-{i}" for i in range(16)]

    def greet(name):
        with connect(server.endpoint) as connection:
            return name, connection.call(WelcomeRequest(name=name), timeout=5.0).message

    with ThreadPoolExecutor(max_workers=len(names)) as pool:
        results = list(pool.map(greet, names))
    for name, message in results:
        assert message == "Welcome onboard " + name

def test_concurrent_calls_share_one_connection(server):
    names = [f"shared-{i}" for i in range(8)]
    with connect(server.endpoint) as connection:
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda n: connection.call(WelcomeRequest(name=n), timeout=5.0), names))
    assert [r.message for r in results] == ["Welcome onboard " + n for n in names]

def test_slow_client_does_not_stall_others(slow_server):
    with connect(slow_server.endpoint) as slow, connect(slow_server.endpoint) as fast:
        worker = threading.Thread(target=slow.call, args=(WelcomeRequest(name="slow"), 5.0))
        worker.start()
        started = time.monotonic()
        assert fast.call(WelcomeRequest(name="fast"), timeout=5.0).message == "Welcome onboard fast"
        assert time.monotonic() - started < 0.95
        worker.join()

def test_call_timeout(slow_server):
    connection = connect(slow_server.endpoint)
    started = time.monotonic()
    with pytest.raises(CallTimeout):
        connection.call(WelcomeRequest(name="late"), timeout=0.1)
    assert time.monotonic() - started < 0.4
    assert connection.state == ConnectionState.CLOSED
    with pytest.raises(CallFailed) as info:
        connection.call(WelcomeRequest(name="again"))
    assert info.value.code == StatusCode.UNAVAILABLE

def test_call_timeout_is_a_timeout_error(slow_server):
    with connect(slow_server.endpoint) as connection:
        with pytest.raises(TimeoutError):
            connection.call(WelcomeRequest(name="late"), timeout=0.1)

def test_close_is_idempotent(server):
    connection = connect(server.endpoint)
    close(connection)
    close(connection)
    connection.close()
    assert connection.state == ConnectionState.CLOSED

def test_call_before_open(server):
    connection = Connection(server.endpoint)
    assert connection.state == ConnectionState.UNOPENED
    with pytest.raises(CallFailed):
        connection.call(WelcomeRequest(name="x"))

def test_closed_connection_cannot_reopen(server):
    connection = connect(server.endpoint)
    connection.close()
    with pytest.raises(ConnectionFailed):
        connection.open()

def test_unimplemented_method():
    class Lazy(WelcomeService):
        pass

    server = start_server(Lazy())
    try:
        with connect(server.endpoint) as connection:
            with pytest.raises(CallFailed) as info:
                connection.call(WelcomeRequest(name="x"))
            assert info.value.code == StatusCode.UNIMPLEMENTED
            # the connection survives an error reply
            assert connection.state == ConnectionState.OPEN
    finally:
        server.stop()

def test_implementation_error_is_internal():
    class Broken:
        def send_welcome(self, request: WelcomeRequest) -> WelcomeResponse:
            raise RuntimeError("boom")

    server = start_server(Broken())
    try:
        with connect(server.endpoint) as connection:
            with pytest.raises(CallFailed) as info:
                connection.call(WelcomeRequest(name="x"))
            assert info.value.code == StatusCode.INTERNAL
            assert "boom" in str(info.value)
    finally:
        server.stop()

def test_malformed_request_payload(server):
    with socket.create_connection((server.endpoint.host, server.endpoint.port), timeout=2.0) as sock:
        send_frame(sock, Frame.Request(SEND_WELCOME.full_name, b'{"name": 42}'))
        reply = recv_frame(sock, time.monotonic() + 2.0)
    assert reply.type == FrameType.ERROR
    assert reply.error.code == StatusCode.INVALID_ARGUMENT  # type: ignore

def test_malformed_framing_closes_only_that_connection(server):
    with socket.create_connection((server.endpoint.host, server.endpoint.port), timeout=2.0) as sock:
        sock.sendall(b"\x42" * HEADER_SIZE)
        assert sock.recv(16) == b""
    with connect(server.endpoint) as connection:
        assert connection.call(WelcomeRequest(name="ok")).message == "Welcome onboard ok"

class _FakeServer:
    '''answers every request with the given raw bytes.'''

    def __init__(self, reply: bytes):
        self.reply = reply
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.address = f"127.0.0.1:{self.sock.getsockname()[1]}"
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        conn, _ = self.sock.accept()
        with conn:
            recv_frame(conn, time.monotonic() + 2.0)
            conn.sendall(self.reply)
            time.sleep(0.2)

    def close(self):
        self.thread.join(timeout=2.0)
        self.sock.close()

def test_malformed_response_payload():
    fake = _FakeServer(Frame.Response(SEND_WELCOME.full_name, b'{"msg": 1}').dump())
    try:
        with connect(fake.address) as connection:
            with pytest.raises(CallFailed) as info:
                connection.call(WelcomeRequest(name="x"), timeout=2.0)
    finally:
        fake.close()
    assert info.value.code == StatusCode.DATA_LOSS
    assert isinstance(info.value.__cause__, MalformedMessage)

def test_malformed_response_frame_closes_connection():
    fake = _FakeServer(b"\x42" * HEADER_SIZE)
    try:
        connection = connect(fake.address)
        with pytest.raises(CallFailed) as info:
            connection.call(WelcomeRequest(name="x"), timeout=2.0)
    finally:
        fake.close()
    assert isinstance(info.value.__cause__, MalformedMessage)
    assert connection.state == ConnectionState.CLOSED

def test_server_hangup_is_call_failed():
    fake = _FakeServer(b"")
    try:
        connection = connect(fake.address)
        with pytest.raises(CallFailed) as info:
            connection.call(WelcomeRequest(name="x"), timeout=2.0)
    finally:
        fake.close()
    assert info.value.code == StatusCode.UNAVAILABLE
    assert connection.state == ConnectionState.CLOSED

def test_stop_drains_in_flight_call():
    server = start_server(WelcomeServicer(delay_secs=0.3))
    result = {}
    with connect(server.endpoint) as connection:
        worker = threading.Thread(target=lambda: result.setdefault("r", connection.call(WelcomeRequest(name="d"), timeout=5.0)))
        worker.start()
        time.sleep(0.1)
        server.stop()
        worker.join(timeout=5.0)
    assert result["r"].message == "Welcome onboard d"
    assert server.wait(timeout=2.0)
    with pytest.raises(ConnectionFailed):
        connect(server.endpoint, timeout=1.0)

def test_serve_blocks_until_stop():
    server = bind("127.0.0.1:0", WelcomeServicer())
    runner = threading.Thread(target=serve, args=(server,))
    runner.start()
    deadline = time.monotonic() + 5.0
    while not server.serving and time.monotonic() < deadline:
        time.sleep(0.01)
    with connect(server.endpoint) as connection:
        assert connection.call(WelcomeRequest(name="s")).message == "Welcome onboard s"
    assert runner.is_alive()
    stop(server)
    runner.join(timeout=5.0)
    assert not runner.is_alive()

def test_stop_is_idempotent_and_works_before_serve():
    server = bind("127.0.0.1:0", WelcomeServicer())
    endpoint = server.endpoint
    server.stop()
    server.stop()
    bind(endpoint, WelcomeServicer()).stop()
    with pytest.raises(TransportFailure):
        server.serve()

def test_serve_requires_bind():
    with pytest.raises(TransportFailure):
        RPCServer("127.0.0.1:0", WelcomeServicer()).serve()

def test_unencodable_request_fails_before_sending(server):
    with connect(server.endpoint) as connection:
        with pytest.raises(CallFailed) as info:
            connection.call(WelcomeRequest(name="\ud800"), timeout=2.0)
        assert info.value.code == StatusCode.INVALID_ARGUMENT
        assert isinstance(info.value.__cause__, MalformedMessage)
        assert connection.state == ConnectionState.OPEN
        assert connection.call(WelcomeRequest(name="next")).message == "Welcome onboard next"

def test_unencodable_response_is_internal():
    class Garbled:
        def send_welcome(self, request: WelcomeRequest) -> WelcomeResponse:
            return WelcomeResponse(message="\ud800")

    server = start_server(Garbled())
    try:
        with connect(server.endpoint) as connection:
            with pytest.raises(CallFailed) as info:
                connection.call(WelcomeRequest(name="x"), timeout=2.0)
            assert info.value.code == StatusCode.INTERNAL
            assert connection.state == ConnectionState.OPEN
    finally:
        server.stop()

def test_oversize_response_frame_gets_error_reply(server, monkeypatch):
    dump = Frame.dump

    def limited_dump(frame):
        if frame.type == FrameType.RESPONSE:
            raise MalformedMessage("Payload too large.")
        return dump(frame)

    monkeypatch.setattr(Frame, "dump", limited_dump)
    with connect(server.endpoint) as connection:
        with pytest.raises(CallFailed) as info:
            connection.call(WelcomeRequest(name="x"), timeout=2.0)
    assert info.value.code == StatusCode.INTERNAL
    assert "Payload too large" in info.value.message

def test_listener_failure_ends_serve(monkeypatch):
    async def broken_listener(self):
        raise OSError(errno.EBADF, "listening socket closed")

    monkeypatch.setattr(asyncio.Server, "serve_forever", broken_listener)
    server = bind("127.0.0.1:0", WelcomeServicer())
    with pytest.raises(TransportFailure) as info:
        server.serve()
    assert isinstance(info.value.__cause__, OSError)
    assert server.wait(timeout=1.0)
    assert not server.serving
    server.stop()

def test_connection_failure_does_not_end_serve(server):
    with socket.create_connection((server.endpoint.host, server.endpoint.port), timeout=2.0) as sock:
        sock.sendall(Frame.Request(SEND_WELCOME.full_name, b"{}").dump()[:HEADER_SIZE + 3])
    with socket.create_connection((server.endpoint.host, server.endpoint.port), timeout=2.0) as sock:
        sock.sendall(b"\x42" * HEADER_SIZE)
        sock.recv(16)
    assert server.serving
    with connect(server.endpoint) as connection:
        assert connection.call(WelcomeRequest(name="still")).message == "Welcome onboard still"

def test_bind_all_interfaces_accepts_ipv4_clients():
    server = bind(":0", WelcomeServicer()).start()
    try:
        assert server.endpoint.host == ""
        port = server.endpoint.port
        for address in (f"127.0.0.1:{port}", f"localhost:{port}", f":{port}"):
            with connect(address) as connection:
                assert connection.call(WelcomeRequest(name="any")).message == "Welcome onboard any"
    finally:
        server.stop()
