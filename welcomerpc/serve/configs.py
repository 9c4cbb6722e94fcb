from pathlib import Path
from typing import Literal
from functools import cache
from typing_extensions import Self
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..common_utils.debug_utils import get_log_level

def _simplify_name(name: str) -> str:
    return name.lower().replace(' ', '').replace('_', '').replace('-', '').strip()

class Endpoint(BaseModel):
    '''A `host:port` address. An empty host means all interfaces when binding.'''
    model_config = ConfigDict(frozen=True)

    host: str = ''
    '''hostname or IP address. IPv6 addresses are stored without brackets.'''
    port: int = Field(ge=0, le=65535)
    '''port number. 0 lets the OS pick a free port when binding.'''

    @classmethod
    def Parse(cls, address: "str|Endpoint") -> "Endpoint":
        '''
        Parse `host:port`, `[ipv6]:port` or `:port`.
        Raises `ValueError` for anything else.
        '''
        if isinstance(address, Endpoint):
            return address
        address = address.strip()
        host, sep, port = address.rpartition(':')
        if not sep or not port:
            raise ValueError(f'Invalid address `{address}`, expected `host:port`.')
        if host.startswith('['):
            if not host.endswith(']'):
                raise ValueError(f'Invalid address `{address}`, unbalanced brackets.')
            host = host[1:-1]
        elif ':' in host:
            raise ValueError(f'Invalid address `{address}`, IPv6 hosts must be in brackets.')
        try:
            port_num = int(port)
        except ValueError:
            raise ValueError(f'Invalid port `{port}` in address `{address}`.') from None
        return cls(host=host, port=port_num)

    @model_validator(mode='before')
    @classmethod
    def _PreValidator(cls, data):
        if isinstance(data, str):
            return cls.Parse(data).model_dump()
        return data

    @property
    def connect_host(self) -> str:
        '''host to connect to; an empty (any interface) host means this machine.'''
        return self.host or 'localhost'

    def __str__(self) -> str:
        host = f'[{self.host}]' if ':' in self.host else self.host
        return f'{host}:{self.port}'

def _field_name_mapper(model: type[BaseModel]) -> dict[str, str]:
    mapper = {}
    for field_name in model.model_fields:
        simple_name = _simplify_name(field_name)
        mapper[simple_name] = field_name
    return mapper

@cache
def _server_configs_field_name_mapper():
    return _field_name_mapper(ServerConfigs)

@cache
def _client_configs_field_name_mapper():
    return _field_name_mapper(ClientConfigs)

class _ConfigsBase(BaseModel):

    @classmethod
    def _FieldNameMapper(cls) -> dict[str, str]:
        raise NotImplementedError

    @classmethod
    def TidyConfigFieldName(cls, name: str) -> str|None:
        '''Get the actual field name from a simplified name.'''
        return cls._FieldNameMapper().get(_simplify_name(name), None)

    @field_validator('log_level', check_fields=False)
    @classmethod
    def _CheckLogLevel(cls, value: str) -> str:
        if value:
            get_log_level(value)    # raises ValueError for unknown names
        return value.strip().upper()

    @model_validator(mode='before')
    @classmethod
    def _PreValidator(cls, data):
        if isinstance(data, dict):
            mapper = cls._FieldNameMapper()
            new_data = {}
            for key, value in data.items():
                simple_key = _simplify_name(key)
                if simple_key in mapper:
                    new_data[mapper[simple_key]] = value
            return new_data
        return data

    @classmethod
    def Load(cls, config: "str|Path|dict|Self|None"=None) -> Self:
        '''Load configs from an instance, a dict, a JSON string or a JSON file path.'''
        if not config:
            return cls()
        if isinstance(config, cls):
            return config
        if isinstance(config, dict):
            return cls.model_validate(config)
        if isinstance(config, (str, Path)):
            if isinstance(config, str) and config.strip().startswith('{'):
                return cls.model_validate_json(config)
            return cls.model_validate_json(Path(config).read_text())
        raise TypeError(f'Invalid type for config: {type(config)}')

class ServerConfigs(_ConfigsBase):
    name: str = ''
    '''The name of the server, used as its logger name. Default to be `welcomerpc-server`.'''
    host: str = ''
    '''The host address to bind. Empty means all interfaces.'''
    port: int = -1
    '''The port number to bind. If not given, use `WELCOMERPC_PORT`. 0 picks a free port.'''
    log_level: Literal['VERBOSE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']|str = ''
    '''The log level for the server process.'''
    drain_timeout_secs: float = -1
    '''How long `stop` waits for in-flight calls before closing connections.'''
    backlog: int = 128
    '''listen() backlog of the listening socket.'''

    @classmethod
    def _FieldNameMapper(cls) -> dict[str, str]:
        return _server_configs_field_name_mapper()

    def model_post_init(self, _) -> None:
        if not self.name:
            self.name = 'welcomerpc-server'
        if self.port < 0:
            from ..common_utils.constants import WELCOMERPC_PORT
            self.port = WELCOMERPC_PORT
        if not self.log_level:
            from ..common_utils.constants import WELCOMERPC_LOG_LEVEL
            self.log_level = WELCOMERPC_LOG_LEVEL
        self.log_level = self.log_level.upper()
        if self.drain_timeout_secs < 0:
            from ..common_utils.constants import WELCOMERPC_DRAIN_TIMEOUT
            self.drain_timeout_secs = WELCOMERPC_DRAIN_TIMEOUT

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(host=self.host, port=self.port)

class ClientConfigs(_ConfigsBase):
    target: Endpoint|None = None
    '''The server address, `host:port`. If not given, `WELCOMERPC_HOST:WELCOMERPC_PORT`.'''
    name: str|None = None
    '''The name to greet. If not given, use `WELCOMERPC_NAME`.'''
    connect_timeout_secs: float = -1
    '''Timeout for establishing the connection.'''
    call_timeout_secs: float = -1
    '''Timeout for one call, from invocation to decoded response.'''
    log_level: Literal['VERBOSE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']|str = ''
    '''The log level for the client process.'''

    @classmethod
    def _FieldNameMapper(cls) -> dict[str, str]:
        return _client_configs_field_name_mapper()

    def model_post_init(self, _) -> None:
        from ..common_utils import constants
        if self.target is None:
            self.target = Endpoint(host=constants.WELCOMERPC_HOST, port=constants.WELCOMERPC_PORT)
        if self.name is None:
            self.name = constants.WELCOMERPC_NAME
        if self.connect_timeout_secs <= 0:
            self.connect_timeout_secs = constants.WELCOMERPC_CONNECT_TIMEOUT
        if self.call_timeout_secs <= 0:
            self.call_timeout_secs = constants.WELCOMERPC_CALL_TIMEOUT
        if not self.log_level:
            self.log_level = constants.WELCOMERPC_LOG_LEVEL
        self.log_level = self.log_level.upper()


__all__ = ['Endpoint', 'ServerConfigs', 'ClientConfigs']
