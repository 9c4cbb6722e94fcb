'''
Interface description of RPC services, written in plain python.

A service contract is a class decorated with `@service`, whose methods are decorated
with `@rpc_method`. The decorators introspect the annotations and attach a
`ServiceDescriptor` to the class, which is all the transport needs:

    @service('welcome.WelcomeService')
    class WelcomeService:
        @rpc_method(name='SendWelcome')
        def send_welcome(self, request: WelcomeRequest) -> WelcomeResponse: ...

Implementations do not have to inherit from the contract class. Methods are resolved
by attribute at dispatch time, and anything missing (or left as the contract's own
declaration) fails with `Unimplemented`.
'''
import inspect

from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar, get_type_hints
from typing_extensions import overload

from .errors import Unimplemented
from .message import Message
from ..common_utils.concurrent_utils import run_any_func

_F = TypeVar('_F', bound=Callable[..., Any])
_C = TypeVar('_C', bound=type)

_METHOD_MARK = '_welcomerpc_method_name'
_DESCRIPTOR_ATTR = '__service_descriptor__'

def _simplify_name(name: str) -> str:
    return name.lower().replace(' ', '').replace('_', '').replace('-', '').strip()

def _camel_name(attr_name: str) -> str:
    return ''.join(part[:1].upper() + part[1:] for part in attr_name.split('_') if part)

@dataclass(frozen=True)
class MethodInfo:
    name: str
    '''The method name on the wire, e.g. `SendWelcome`.'''
    attr_name: str
    '''The python attribute implementing this method, e.g. `send_welcome`.'''
    service_name: str
    '''The full name of the service owning this method.'''
    input_type: type[Message]
    '''The type of request message.'''
    output_type: type[Message]
    '''The type of response message.'''
    description: str|None = None
    '''Documentation only, taken from the declaration's docstring.'''

    @property
    def full_name(self) -> str:
        return f'{self.service_name}/{self.name}'

@dataclass(frozen=True, eq=False)
class ServiceDescriptor:
    name: str
    '''The full service name, e.g. `welcome.WelcomeService`.'''
    methods: dict[str, MethodInfo] = field(default_factory=dict)
    '''{wire method name: MethodInfo}'''
    declaration: type|None = None
    '''The contract class this descriptor was built from.'''

    def get_method(self, name: str) -> MethodInfo|None:
        '''
        Find a method by its wire name, full name (`service/method`) or python attribute name.
        Matching of the method part is tolerant to case, `_`, `-` and spaces.
        '''
        service_name, sep, method_name = name.rpartition('/')
        if sep and service_name != self.name:
            return None
        if (info := self.methods.get(method_name, None)):
            return info
        simple_name = _simplify_name(method_name)
        for info in self.methods.values():
            if simple_name in (_simplify_name(info.name), _simplify_name(info.attr_name)):
                return info
        return None

@overload
def rpc_method(f: _F, /) -> _F: ...
@overload
def rpc_method(*, name: str|None=None) -> Callable[[_F], _F]: ...

def rpc_method(f=None, /, name=None):   # type: ignore
    '''
    Declare a unary method inside a `@service` class.
    The method must take exactly one request parameter, and both the parameter and the return
    value must be annotated with `Message` subclasses.
    If `name` is not given, the wire name is the CamelCase form of the function name.
    '''
    def decorator(func: _F) -> _F:
        setattr(func, _METHOD_MARK, name or _camel_name(func.__name__))
        return func
    if f is not None:
        return decorator(f)
    return decorator

def _build_method_info(service_name: str, attr_name: str, func: Callable) -> MethodInfo:
    hints = get_type_hints(func)
    params = [p for p in inspect.signature(func).parameters.values() if p.name != 'self']
    if len(params) != 1:
        raise TypeError(f'RPC method `{attr_name}` must take exactly one request parameter, got {len(params)}.')
    input_type = hints.get(params[0].name, None)
    output_type = hints.get('return', None)
    for role, t in (('request', input_type), ('response', output_type)):
        if not (isinstance(t, type) and issubclass(t, Message)):
            raise TypeError(f'The {role} type of RPC method `{attr_name}` must be a `Message` subclass, got {t!r}.')
    return MethodInfo(
        name=getattr(func, _METHOD_MARK),
        attr_name=attr_name,
        service_name=service_name,
        input_type=input_type,     # type: ignore
        output_type=output_type,   # type: ignore
        description=inspect.getdoc(func),
    )

def service(name: str) -> Callable[[_C], _C]:
    '''Mark a class as a service contract named `name` (e.g. `package.ServiceName`).'''
    def wrapper(cls: _C) -> _C:
        methods: dict[str, MethodInfo] = {}
        for attr_name, obj in vars(cls).items():
            func = obj.__func__ if isinstance(obj, (staticmethod, classmethod)) else obj
            if not callable(func) or not hasattr(func, _METHOD_MARK):
                continue
            info = _build_method_info(name, attr_name, func)
            if info.name in methods:
                raise TypeError(f'Duplicated RPC method name `{info.name}` in service `{name}`.')
            methods[info.name] = info
        setattr(cls, _DESCRIPTOR_ATTR, ServiceDescriptor(name=name, methods=methods, declaration=cls))
        return cls
    return wrapper

def get_service_descriptor(obj: Any) -> ServiceDescriptor|None:
    '''Get the descriptor of a contract class, or of any object inheriting from one.'''
    cls = obj if isinstance(obj, type) else type(obj)
    descriptor = getattr(cls, _DESCRIPTOR_ATTR, None)
    return descriptor if isinstance(descriptor, ServiceDescriptor) else None

def is_declaration(func: Any) -> bool:
    '''whether `func` is a contract declaration, rather than an implementation.'''
    return hasattr(getattr(func, '__func__', func), _METHOD_MARK)

def resolve_handler(
    descriptor: ServiceDescriptor,
    implementation: Any,
    method: str|MethodInfo,
) -> tuple[MethodInfo, Callable[[Message], Any]]:
    '''
    Find the callable handling `method` on `implementation`.
    Raises `Unimplemented` for unknown methods, and for methods the implementation does not override.
    '''
    info = method if isinstance(method, MethodInfo) else descriptor.get_method(method)
    if info is None:
        raise Unimplemented(f'Unknown method `{method}` for service `{descriptor.name}`.')
    handler = getattr(implementation, info.attr_name, None)
    if handler is None or not callable(handler) or is_declaration(handler):
        raise Unimplemented(f'Method `{info.full_name}` is not implemented.')
    return info, handler

async def dispatch(
    descriptor: ServiceDescriptor,
    implementation: Any,
    method: str|MethodInfo,
    request: Message|bytes,
) -> Message:
    '''
    Invoke `method` on `implementation`.
    `request` can be a message, or its encoded bytes (decoded with the method's request type).
    Sync handlers run in the default executor, so a slow handler does not block the event loop.
    '''
    info, handler = resolve_handler(descriptor, implementation, method)
    if isinstance(request, (bytes, bytearray, memoryview)):
        request = info.input_type.Parse(request)
    elif not isinstance(request, info.input_type):
        raise TypeError(f'`{info.full_name}` expects {info.input_type.__name__}, got {type(request).__name__}.')
    response = await run_any_func(handler, request)
    if not isinstance(response, info.output_type):
        raise TypeError(f'`{info.full_name}` returned {type(response).__name__}, expected {info.output_type.__name__}.')
    return response


__all__ = [
    'MethodInfo',
    'ServiceDescriptor',
    'rpc_method',
    'service',
    'get_service_descriptor',
    'is_declaration',
    'resolve_handler',
    'dispatch',
]
