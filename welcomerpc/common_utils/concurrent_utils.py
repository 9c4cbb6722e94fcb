import inspect
import asyncio

from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, TypeVar, ParamSpec, get_origin
from typing_extensions import TypeAliasType

_P = ParamSpec('_P')
_T = TypeVar('_T')
SyncOrAsyncFunc = TypeAliasType('SyncOrAsyncFunc', Callable[_P, Awaitable[_T]]|Callable[_P, _T], type_params=(_P, _T))

def is_async_callable(func) -> bool:
    if isinstance(func, partial):
        return is_async_callable(func.func)
    if inspect.iscoroutinefunction(func):
        return True
    if not inspect.isfunction(func) and not inspect.ismethod(func) and hasattr(func, '__call__'):
        return inspect.iscoroutinefunction(func.__call__)
    try:
        return_anno = inspect.signature(func).return_annotation
    except (TypeError, ValueError):
        return False
    if get_origin(return_anno) in (Coroutine, Awaitable) or (return_anno in (Coroutine, Awaitable)):
        return True
    return False

async def run_any_func(func: SyncOrAsyncFunc[..., Any], *args, **kwargs) -> Any:
    '''
    Run a sync or async callable from inside a running loop.
    Sync callables are sent to the loop's default executor, to prevent blocking the event loop.
    '''
    if is_async_callable(func):
        r = func(*args, **kwargs)
    else:
        loop = asyncio.get_running_loop()
        r = loop.run_in_executor(None, partial(func, *args, **kwargs))
    if isinstance(r, Awaitable):
        r = await r
    return r


__all__ = ['SyncOrAsyncFunc', 'is_async_callable', 'run_any_func']
