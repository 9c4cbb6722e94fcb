from enum import IntEnum

class StatusCode(IntEnum):
    '''status codes carried by ERROR frames, numbered as in gRPC.'''
    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15

    @classmethod
    def Tidy(cls, value: int) -> "StatusCode":
        '''map an unknown numeric code received from a peer to UNKNOWN.'''
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

class RPCError(Exception):
    '''base class of all errors raised by welcomerpc.'''
    code: StatusCode = StatusCode.UNKNOWN

class MalformedMessage(RPCError, ValueError):
    '''bytes do not match the expected record or frame shape.'''
    code = StatusCode.INVALID_ARGUMENT

class Unimplemented(RPCError, NotImplementedError):
    '''the bound implementation does not provide the requested method.'''
    code = StatusCode.UNIMPLEMENTED

class EndpointUnavailable(RPCError, OSError):
    '''the endpoint cannot be bound, e.g. another listener already holds it.'''
    code = StatusCode.UNAVAILABLE

class TransportFailure(RPCError):
    '''the listening socket failed; fatal to `serve`.'''
    code = StatusCode.UNAVAILABLE

class ConnectionFailed(RPCError, ConnectionError):
    '''the endpoint refused the connection, or establishing it timed out.'''
    code = StatusCode.UNAVAILABLE

class CallTimeout(RPCError, TimeoutError):
    '''no response arrived within the call timeout.'''
    code = StatusCode.DEADLINE_EXCEEDED

class CallFailed(RPCError):
    '''
    A unary call failed without a response.
    `code` tells whether the server answered with an error, or the exchange itself broke.
    The original failure (e.g. `MalformedMessage`) is chained as `__cause__`.
    '''

    def __init__(self, message: str, code: StatusCode|int=StatusCode.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.code = StatusCode.Tidy(int(code))

    def __str__(self):
        return f'[{self.code.name}] {self.message}'


__all__ = [
    'StatusCode',
    'RPCError',
    'MalformedMessage',
    'Unimplemented',
    'EndpointUnavailable',
    'TransportFailure',
    'ConnectionFailed',
    'CallTimeout',
    'CallFailed',
]
