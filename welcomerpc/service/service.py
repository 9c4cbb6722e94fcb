import time

from .message import WelcomeRequest, WelcomeResponse
from .register import service, rpc_method, get_service_descriptor, ServiceDescriptor

from ..common_utils.debug_utils import get_logger, Logger

WELCOME_PREFIX = 'Welcome onboard '

@service('welcome.WelcomeService')
class WelcomeService:
    '''
    The welcome service contract.
    Implementations only need a `send_welcome` method with the same signature; inheriting
    from this class is optional. Inherited but not overridden methods are reported to
    callers as `UNIMPLEMENTED`.
    '''

    @rpc_method(name='SendWelcome')
    def send_welcome(self, request: WelcomeRequest) -> WelcomeResponse:
        '''Greet `request.name`.'''
        ...

WELCOME_SERVICE: ServiceDescriptor = get_service_descriptor(WelcomeService)  # type: ignore
'''descriptor of `WelcomeService`.'''
SEND_WELCOME = WELCOME_SERVICE.methods['SendWelcome']

class WelcomeServicer(WelcomeService):
    '''
    Default `WelcomeService` implementation.
    `send_welcome` is a pure function of the request name, so one instance can be shared
    by all connections without locking.
    '''

    delay_secs: float
    '''simulated processing time before answering. Never changes the answer.'''

    def __init__(self, delay_secs: float=0.0):
        self.delay_secs = delay_secs

    @property
    def logger(self)->Logger:
        if not (logger:=getattr(self, '_logger', None)):
            logger = self._logger = get_logger(self.__class__.__name__)
        return logger

    def send_welcome(self, request: WelcomeRequest) -> WelcomeResponse:
        self.logger.info(f'Received: {request.name}')
        if self.delay_secs > 0:
            time.sleep(self.delay_secs)
        return WelcomeResponse(message=WELCOME_PREFIX + request.name)


__all__ = [
    'WELCOME_PREFIX',
    'WELCOME_SERVICE',
    'SEND_WELCOME',
    'WelcomeService',
    'WelcomeServicer',
]
