import os

from .debug_utils import LOG_LEVEL_NAMES

def _float_env(key: str, default: float) -> float:
    try:
        value = float(os.environ.get(key, str(default)).strip())
    except ValueError:
        return default
    return value if value > 0 else default

WELCOMERPC_HOST = os.environ.get('WELCOMERPC_HOST', 'localhost')
try:
    WELCOMERPC_PORT = int(os.environ.get('WELCOMERPC_PORT', '50051').strip())
except ValueError:
    WELCOMERPC_PORT = 50051

WELCOMERPC_LOG_LEVEL = os.environ.get('WELCOMERPC_LOG_LEVEL', 'INFO').upper()
if WELCOMERPC_LOG_LEVEL not in LOG_LEVEL_NAMES:
    WELCOMERPC_LOG_LEVEL = 'INFO'

WELCOMERPC_CONNECT_TIMEOUT = _float_env('WELCOMERPC_CONNECT_TIMEOUT', 5.0)
'''seconds allowed for establishing a connection.'''
WELCOMERPC_CALL_TIMEOUT = _float_env('WELCOMERPC_CALL_TIMEOUT', 5.0)
'''seconds allowed for one unary call, from invocation to decoded response.'''
WELCOMERPC_DRAIN_TIMEOUT = _float_env('WELCOMERPC_DRAIN_TIMEOUT', 5.0)
'''seconds the server waits for in-flight exchanges when stopping.'''

WELCOMERPC_NAME = os.environ.get('WELCOMERPC_NAME', 'world')
'''default name greeted by the command line client.'''


__all__ = [
    "WELCOMERPC_HOST",
    "WELCOMERPC_PORT",
    "WELCOMERPC_LOG_LEVEL",
    "WELCOMERPC_CONNECT_TIMEOUT",
    "WELCOMERPC_CALL_TIMEOUT",
    "WELCOMERPC_DRAIN_TIMEOUT",
    "WELCOMERPC_NAME",
]
