import time
import socket

from enum import Enum
from threading import Lock
from typing import Any, TypeVar
from typing_extensions import Self

from .configs import Endpoint, ClientConfigs
from ..service.comm import Frame, FrameType, send_frame, recv_frame
from ..service.errors import (MalformedMessage, ConnectionFailed, CallTimeout, CallFailed, StatusCode)
from ..service.message import Message, WelcomeRequest, WelcomeResponse
from ..service.register import MethodInfo, ServiceDescriptor
from ..service.service import WELCOME_SERVICE, SEND_WELCOME
from ..common_utils.debug_utils import get_logger, Logger

_MT = TypeVar('_MT', bound=Message)
_logger = get_logger(__name__)

class ConnectionState(str, Enum):
    UNOPENED = 'unopened'
    OPEN = 'open'
    CLOSED = 'closed'

class Connection:
    '''
    A client connection to one endpoint, reusable for any number of sequential calls.

    States: UNOPENED -> OPEN (`open`) -> CLOSED (`close`, or an I/O error / timeout
    that leaves the stream unusable). CLOSED is terminal.
    Calls from several threads are serialized; waiting for the connection counts
    against the caller's timeout.
    '''

    _endpoint: Endpoint
    _connect_timeout: float|None
    '''default timeout for `open`.'''
    _call_timeout: float|None
    '''default timeout for calls.'''
    _sock: socket.socket|None = None
    _state: ConnectionState = ConnectionState.UNOPENED
    _lock: Lock
    '''serializes calls on this connection.'''
    _state_lock: Lock

    def __init__(
        self,
        endpoint: Endpoint|str,
        connect_timeout: float|None=None,
        call_timeout: float|None=None,
    ):
        from ..common_utils.constants import WELCOMERPC_CONNECT_TIMEOUT, WELCOMERPC_CALL_TIMEOUT
        self._endpoint = Endpoint.Parse(endpoint)
        self._connect_timeout = WELCOMERPC_CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        self._call_timeout = WELCOMERPC_CALL_TIMEOUT if call_timeout is None else call_timeout
        self._lock = Lock()
        self._state_lock = Lock()

    @classmethod
    def FromConfigs(cls, configs: ClientConfigs) -> Self:
        return cls(
            configs.target,  # type: ignore
            connect_timeout=configs.connect_timeout_secs,
            call_timeout=configs.call_timeout_secs,
        )

    def __repr__(self):
        return f'<{self.__class__.__name__}({self._endpoint}, {self._state.value})>'

    __str__ = __repr__

    # region properties
    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def logger(self)->Logger:
        return _logger
    # endregion

    def open(self, timeout: float|None=None) -> Self:
        '''
        Connect to the endpoint. `timeout` only bounds establishing the connection.
        Raises `ConnectionFailed` if the endpoint refuses, cannot be resolved, or the timeout elapses.
        '''
        timeout = self._connect_timeout if timeout is None else timeout
        with self._state_lock:
            if self._state == ConnectionState.OPEN:
                return self
            if self._state == ConnectionState.CLOSED:
                raise ConnectionFailed(f'{self} is closed and cannot be reopened.')
            address = (self._endpoint.connect_host, self._endpoint.port)
            try:
                sock = socket.create_connection(address, timeout=timeout)
            except (TimeoutError, socket.timeout) as e:
                raise ConnectionFailed(f'Timeout connecting to {self._endpoint} after {timeout}s.') from e
            except OSError as e:
                raise ConnectionFailed(f'Cannot connect to {self._endpoint}. {type(e).__name__}: {e}') from e
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self._sock = sock
            self._state = ConnectionState.OPEN
        self.logger.debug(f'Connected to {self._endpoint}.')
        return self

    def close(self):
        '''Release the connection. Calling it again is a no-op.'''
        with self._state_lock:
            if self._state == ConnectionState.CLOSED:
                return
            self._state = ConnectionState.CLOSED
            sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass    # already disconnected
            sock.close()
            self.logger.debug(f'Connection to {self._endpoint} closed.')

    def invoke(self, method: MethodInfo, request: Message, timeout: float|None=None) -> Any:
        '''
        Perform one unary call of `method`.
        The timeout clock starts now, including the time spent waiting for other calls on this connection.

        Raises:
            - `CallTimeout`: no response in time. The connection is closed, since the stream may hold a partial exchange.
            - `CallFailed`: the request cannot be encoded (`INVALID_ARGUMENT`, nothing sent), the server answered an
                error (connection stays open), the response could not be
                decoded (`DATA_LOSS`, chained from `MalformedMessage`), or the connection broke (`UNAVAILABLE`).
        '''
        start = time.monotonic()
        timeout = self._call_timeout if timeout is None else timeout
        deadline = None if timeout is None else start + timeout
        if not isinstance(request, method.input_type):
            raise TypeError(f'`{method.full_name}` expects {method.input_type.__name__}, got {type(request).__name__}.')
        try:
            payload = request.dump()
        except MalformedMessage as e:
            # nothing sent, the connection stays usable
            raise CallFailed(f'Cannot encode request of `{method.full_name}`: {e}', StatusCode.INVALID_ARGUMENT) from e

        if not self._lock.acquire(timeout=-1 if deadline is None else max(deadline - time.monotonic(), 0)):
            raise CallTimeout(f'Timeout waiting for {self} after {timeout}s.')
        try:
            if (sock := self._sock) is None or self._state != ConnectionState.OPEN:
                raise CallFailed(f'{self} is not open.', StatusCode.UNAVAILABLE)
            if deadline is not None and time.monotonic() >= deadline:
                # nothing sent yet, the connection is still clean
                raise CallTimeout(f'Timeout waiting for {self} after {timeout}s.')
            try:
                self.logger.verbose(f'Calling `{method.full_name}` on {self._endpoint}, {len(payload)} bytes.')
                send_frame(sock, Frame.Request(method.full_name, payload), deadline)
                frame = recv_frame(sock, deadline)
            except (TimeoutError, socket.timeout) as e:
                self.close()
                raise CallTimeout(f'`{method.full_name}` got no response in {timeout}s.') from e
            except MalformedMessage as e:
                self.close()    # framing is lost
                raise CallFailed(f'Malformed frame from {self._endpoint}: {e}', StatusCode.DATA_LOSS) from e
            except OSError as e:
                self.close()
                raise CallFailed(f'Connection to {self._endpoint} broken. {type(e).__name__}: {e}', StatusCode.UNAVAILABLE) from e
        finally:
            self._lock.release()
        return self._unpack(method, frame)

    def _unpack(self, method: MethodInfo, frame: Frame) -> Message:
        try:
            if frame.method != method.full_name:
                raise MalformedMessage(f'Response is for `{frame.method}`, expected `{method.full_name}`.')
            if frame.type == FrameType.ERROR:
                detail = frame.error
            elif frame.type == FrameType.RESPONSE:
                return method.output_type.Parse(frame.payload)
            else:
                raise MalformedMessage(f'Unexpected {frame.type.name} frame from server.')
        except MalformedMessage as e:
            raise CallFailed(f'Cannot decode response of `{method.full_name}`: {e}', StatusCode.DATA_LOSS) from e
        raise CallFailed(detail.message, detail.code)     # type: ignore

    def call(self, request: WelcomeRequest, timeout: float|None=None) -> WelcomeResponse:
        '''`SendWelcome` call.'''
        return self.invoke(SEND_WELCOME, request, timeout)

    def __enter__(self) -> Self:
        return self.open()

    def __exit__(self, *_):
        self.close()

    def __del__(self):
        if getattr(self, '_sock', None) is not None:
            self.close()

class ServiceStub:
    '''
    Presents the methods of a service as local calls over a `Connection`.
    Methods are looked up by python name, e.g. `stub.send_welcome(request)`.
    '''

    def __init__(self, connection: Connection, descriptor: ServiceDescriptor):
        self._connection = connection
        self._descriptor = descriptor

    @property
    def connection(self) -> Connection:
        return self._connection

    def invoke(self, method: str, request: Message, timeout: float|None=None) -> Any:
        if (info := self._descriptor.get_method(method)) is None:
            raise AttributeError(f'Service `{self._descriptor.name}` has no method `{method}`.')
        return self._connection.invoke(info, request, timeout)

    def __getattr__(self, name: str):
        if name.startswith('_'):
            raise AttributeError(name)
        for info in self._descriptor.methods.values():
            if info.attr_name == name:
                def method(request: Message, timeout: float|None=None):
                    return self._connection.invoke(info, request, timeout)
                method.__name__ = name
                method.__doc__ = info.description
                return method
        raise AttributeError(f'`{type(self).__name__}` has no attribute `{name}`.')

class WelcomeServiceStub(ServiceStub):

    def __init__(self, connection: Connection):
        super().__init__(connection, WELCOME_SERVICE)

    def send_welcome(self, request: WelcomeRequest, timeout: float|None=None) -> WelcomeResponse:
        return self._connection.invoke(SEND_WELCOME, request, timeout)

def connect(endpoint: Endpoint|str, timeout: float|None=None) -> Connection:
    '''Open a connection. Raises `ConnectionFailed`.'''
    return Connection(endpoint).open(timeout)

def call(connection: Connection, request: WelcomeRequest, timeout: float|None=None) -> WelcomeResponse:
    return connection.call(request, timeout)

def close(connection: Connection):
    connection.close()


__all__ = [
    'ConnectionState',
    'Connection',
    'ServiceStub',
    'WelcomeServiceStub',
    'connect',
    'call',
    'close',
]
