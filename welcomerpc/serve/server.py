import socket
import asyncio

from threading import Thread, Event, Lock, current_thread
from typing import Any, TypedDict
from typing_extensions import Self, Unpack

from .configs import Endpoint, ServerConfigs
from ..service.comm import Frame, FrameType, read_frame
from ..service.errors import RPCError, MalformedMessage, EndpointUnavailable, TransportFailure, StatusCode
from ..service.register import ServiceDescriptor, get_service_descriptor, dispatch
from ..service.service import WELCOME_SERVICE
from ..common_utils.debug_utils import get_logger, Logger

class _ServerOptions(TypedDict, total=False):
    name: str
    '''Name of the server, used as its logger name.'''
    drain_timeout_secs: float
    '''How long `stop` waits for in-flight calls. Default is `WELCOMERPC_DRAIN_TIMEOUT`.'''
    backlog: int
    '''listen() backlog. Default is 128.'''

def _create_listening_socket(endpoint: Endpoint, backlog: int) -> socket.socket:
    host = endpoint.host or None    # None: all interfaces
    try:
        infos = socket.getaddrinfo(host, endpoint.port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except socket.gaierror as e:
        raise EndpointUnavailable(f'Cannot resolve `{endpoint}`: {e}') from e
    dual_stack = host is None and socket.has_dualstack_ipv6()
    if dual_stack:
        # one IPv6 socket also accepting IPv4 peers
        infos.sort(key=lambda info: info[0] != socket.AF_INET6)
    last_error: OSError|None = None
    for family, sock_type, proto, _, address in infos:
        sock = socket.socket(family, sock_type, proto)
        try:
            if hasattr(socket, 'SO_EXCLUSIVEADDRUSE'):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)   # type: ignore
            else:
                # only skips TIME_WAIT; an active listener still owns the address
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if dual_stack and family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(address)
            sock.listen(backlog)
        except OSError as e:
            sock.close()
            last_error = e
            continue
        sock.setblocking(False)
        return sock
    raise EndpointUnavailable(f'Cannot bind `{endpoint}`: {last_error}') from last_error

class RPCServer:
    '''
    Serve one service implementation on one endpoint.

    Lifecycle: `bind()` reserves the endpoint, `serve()` blocks running the accept loop
    (or `start()` runs it on a background thread), `stop()` releases the endpoint after
    in-flight calls are finished. Each accepted connection is handled in its own task;
    calls on one connection are handled one after another.
    '''

    _endpoint: Endpoint
    '''the requested endpoint; replaced by the actual address after binding.'''
    _implementation: Any
    '''the object implementing the service methods.'''
    _descriptor: ServiceDescriptor
    '''the contract served.'''
    _name: str
    _drain_timeout: float
    _backlog: int

    # runtime internals
    _sock: socket.socket|None = None
    '''the listening socket, owned by the asyncio server once serving.'''
    _loop: asyncio.AbstractEventLoop|None = None
    '''the loop running `serve`.'''
    _stop_requested: asyncio.Event|None = None
    '''set (inside the loop) to end `serve`.'''
    _stop_flag: Event
    '''thread-side flag of a stop request, also covers stop before serve.'''
    _serving: Event
    '''set when the server is accepting connections.'''
    _stopped: Event
    '''set when `serve` has fully returned.'''
    _state_lock: Lock
    _runner_thread: Thread|None = None
    '''thread running `serve`, when started by `start()`.'''
    _runner_error: BaseException|None = None
    '''error raised by `serve` on the runner thread.'''
    _inflight: set[asyncio.Task]
    '''calls being handled.'''
    _connections: set[asyncio.Task]
    '''tasks handling connected clients.'''

    def __init__(
        self,
        endpoint: Endpoint|str,
        implementation: Any,
        descriptor: ServiceDescriptor|None=None,
        **kwargs: Unpack[_ServerOptions],
    ):
        self._endpoint = Endpoint.Parse(endpoint)
        self._implementation = implementation
        self._descriptor = descriptor or get_service_descriptor(implementation) or WELCOME_SERVICE
        self._name = kwargs.get('name', 'welcomerpc-server')
        if (drain_timeout:=kwargs.get('drain_timeout_secs', None)) is None:
            from ..common_utils.constants import WELCOMERPC_DRAIN_TIMEOUT
            drain_timeout = WELCOMERPC_DRAIN_TIMEOUT
        self._drain_timeout = drain_timeout
        self._backlog = kwargs.get('backlog', 128)
        self._stop_flag = Event()
        self._serving = Event()
        self._stopped = Event()
        self._state_lock = Lock()
        self._inflight = set()
        self._connections = set()

    @classmethod
    def FromConfigs(cls, configs: ServerConfigs, implementation: Any, descriptor: ServiceDescriptor|None=None) -> Self:
        return cls(
            configs.endpoint,
            implementation,
            descriptor,
            name=configs.name,
            drain_timeout_secs=configs.drain_timeout_secs,
            backlog=configs.backlog,
        )

    def __repr__(self):
        return f'<{self.__class__.__name__}({self.name}@{self.endpoint})>'

    __str__ = __repr__

    # region properties
    @property
    def name(self) -> str:
        return self._name

    @property
    def endpoint(self) -> Endpoint:
        '''The endpoint; after binding, it holds the actual port.'''
        return self._endpoint

    @property
    def descriptor(self) -> ServiceDescriptor:
        return self._descriptor

    @property
    def bound(self) -> bool:
        return self._sock is not None and not self._stop_flag.is_set()

    @property
    def serving(self) -> bool:
        return self._serving.is_set() and not self._stopped.is_set()

    @property
    def logger(self)->Logger:
        if not (logger:=getattr(self, '_logger', None)):
            logger = self._logger = get_logger(self.name)
        return logger
    # endregion

    def bind(self) -> Self:
        '''Reserve the endpoint. Raises `EndpointUnavailable` if it is in use.'''
        with self._state_lock:
            if self._sock is not None:
                return self
            if self._stop_flag.is_set():
                raise TransportFailure(f'{self} is stopped and cannot be bound again.')
            self._sock = _create_listening_socket(self._endpoint, self._backlog)
            port = self._sock.getsockname()[1]
            self._endpoint = Endpoint(host=self._endpoint.host, port=port)
        self.logger.success(f'server listening at {self._endpoint}')
        return self

    # region serving
    def serve(self):
        '''
        Accept connections until `stop()` is called. Blocks the calling thread.
        Raises `TransportFailure` if the server is not bound, or the listening socket fails.
        '''
        if self._sock is None:
            raise TransportFailure(f'{self} is not bound.')
        if self._stopped.is_set():
            raise TransportFailure(f'{self} has already been stopped.')
        try:
            asyncio.run(self._serve_async())
        except RPCError:
            raise
        except OSError as e:
            raise TransportFailure(f'{self} failed: {e}') from e
        finally:
            self._stopped.set()

    async def _serve_async(self):
        stop_requested = asyncio.Event()
        self._stop_requested = stop_requested
        self._loop = asyncio.get_running_loop()
        if self._stop_flag.is_set():
            # stop() came before the loop existed
            self._sock.close()  # type: ignore
            return
        server = await asyncio.start_server(self._on_connection, sock=self._sock, backlog=self._backlog)
        serve_task = asyncio.create_task(server.serve_forever())
        stop_task = asyncio.create_task(stop_requested.wait())
        self._serving.set()
        self.logger.debug(f'{self} accepting connections.')
        try:
            done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            await self._shutdown(server, serve_task)
        if serve_task in done and not serve_task.cancelled() and (error := serve_task.exception()) is not None:
            raise TransportFailure(f'Listening socket of {self} failed: {type(error).__name__}: {error}') from error

    async def _shutdown(self, server: asyncio.AbstractServer, serve_task: asyncio.Task):
        server.close()
        if not serve_task.done():
            serve_task.cancel()
        await asyncio.gather(serve_task, return_exceptions=True)
        if self._inflight:
            self.logger.debug(f'Waiting for {len(self._inflight)} in-flight call(s) to finish.')
            _, pending = await asyncio.wait(set(self._inflight), timeout=self._drain_timeout)
            if pending:
                self.logger.warning(f'{len(pending)} call(s) did not finish in {self._drain_timeout}s, dropping them.')
        for task in tuple(self._connections):
            task.cancel()
        await asyncio.gather(*self._connections, return_exceptions=True)
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=1.0)
        except asyncio.TimeoutError:
            self.logger.debug(f'Timeout waiting for {self} to close.')
        self.logger.info(f'{self} stopped.')

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info('peername')
        if (task := asyncio.current_task()) is not None:
            self._connections.add(task)
        self.logger.debug(f'Connection from {peer} opened.')
        try:
            while not self._stop_flag.is_set():
                try:
                    frame = await read_frame(reader)
                except MalformedMessage as e:
                    self.logger.warning(f'Malformed frame from {peer}, closing the connection. {e}')
                    break
                if frame is None:
                    break   # peer closed
                call = asyncio.create_task(self._handle_call(frame, writer, peer))
                self._inflight.add(call)
                call.add_done_callback(self._inflight.discard)
                await asyncio.shield(call)
        except ConnectionError as e:
            self.logger.warning(f'Connection from {peer} lost. {type(e).__name__}: {e}')
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self.logger.debug(f'Connection from {peer} closed.')

    async def _handle_call(self, frame: Frame, writer: asyncio.StreamWriter, peer: Any):
        try:
            if frame.type != FrameType.REQUEST:
                raise MalformedMessage(f'Expected a REQUEST frame, got {frame.type.name}.')
            response = await dispatch(self._descriptor, self._implementation, frame.method, frame.payload)
        except RPCError as e:
            self.logger.info(f'Call `{frame.method}` from {peer} failed: {type(e).__name__}: {e}')
            data = Frame.Error(frame.method, e.code, str(e)).dump()
        except Exception as e:
            self.logger.error(f'Error handling `{frame.method}` from {peer}. {type(e).__name__}: {e}', exc_info=True)
            data = Frame.Error(frame.method, StatusCode.INTERNAL, f'{type(e).__name__}: {e}').dump()
        else:
            try:
                data = Frame.Response(frame.method, response.dump()).dump()
            except MalformedMessage as e:
                # the implementation produced something the wire cannot carry
                self.logger.error(f'Cannot encode the response of `{frame.method}` for {peer}. {e}')
                data = Frame.Error(frame.method, StatusCode.INTERNAL, f'Cannot encode the response: {e}').dump()
        try:
            writer.write(data)
            await writer.drain()
        except ConnectionError as e:
            # the client is gone, e.g. it timed out; the result is dropped
            self.logger.info(f'Cannot reply `{frame.method}` to {peer}. {type(e).__name__}: {e}')
    # endregion

    def start(self, timeout: float|None=5.0) -> Self:
        '''
        Bind if needed, then serve on a background thread.
        Returns once the server is accepting connections; raises what `serve` raised if it failed to start.
        '''
        self.bind()
        with self._state_lock:
            if self._runner_thread is not None:
                return self
            self._runner_thread = Thread(target=self._run_in_thread, name=f'{self.name}-runner', daemon=True)
            self._runner_thread.start()
        while not self._serving.wait(0.01):
            if self._stopped.is_set():
                self._runner_thread.join(timeout=1.0)   # let it record the error
                break
            if timeout is not None:
                timeout -= 0.01
                if timeout <= 0:
                    raise TransportFailure(f'{self} did not start in time.')
        if self._runner_error is not None:
            raise self._runner_error
        return self

    def _run_in_thread(self):
        try:
            self.serve()
        except BaseException as e:
            self._runner_error = e
            self.logger.error(f'{self} stopped unexpectedly. {type(e).__name__}: {e}')

    def wait(self, timeout: float|None=None) -> bool:
        '''wait until the server is stopped. Returns False on timeout.'''
        return self._stopped.wait(timeout)

    def stop(self, grace: float|None=None):
        '''
        Stop accepting connections, let in-flight calls finish, and release the endpoint.
        Safe to call from any thread, and more than once.
        '''
        with self._state_lock:
            if self._stop_flag.is_set():
                first = False
            else:
                first = True
                if grace is not None:
                    self._drain_timeout = grace
                self._stop_flag.set()
            loop, sock = self._loop, self._sock
        if first:
            if loop is not None and self._stop_requested is not None:
                try:
                    loop.call_soon_threadsafe(self._stop_requested.set)
                except RuntimeError:
                    pass    # loop already closed, serve has returned
            elif sock is not None:
                sock.close()    # never served
                self._stopped.set()
                self.logger.info(f'{self} stopped.')
        runner = self._runner_thread
        if runner is not None and runner.is_alive() and runner is not current_thread():
            runner.join(timeout=self._drain_timeout + 5.0)

    def __enter__(self) -> Self:
        return self.bind()

    def __exit__(self, *_):
        self.stop()

    def __del__(self):
        if getattr(self, '_sock', None) is not None and not self._stop_flag.is_set():
            self.stop()

def bind(
    endpoint: Endpoint|str,
    implementation: Any,
    descriptor: ServiceDescriptor|None=None,
    **kwargs: Unpack[_ServerOptions],
) -> RPCServer:
    '''Reserve `endpoint` for `implementation`. Raises `EndpointUnavailable` if it is in use.'''
    return RPCServer(endpoint, implementation, descriptor, **kwargs).bind()

def serve(handle: RPCServer):
    handle.serve()

def stop(handle: RPCServer, grace: float|None=None):
    handle.stop(grace)


__all__ = [
    'RPCServer',
    'bind',
    'serve',
    'stop',
]
