import orjson

from typing import TypeVar
from typing_extensions import Self
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import MalformedMessage

class Message(BaseModel):
    '''
    Base class of all records sent over the wire.
    Records are immutable, and decoding is strict: missing, extra or wrongly-typed
    fields are rejected instead of coerced.
    '''
    model_config = ConfigDict(frozen=True, extra='forbid', strict=True)

    def dump(self) -> bytes:
        '''Encode this record into bytes (orjson of its fields).'''
        try:
            return orjson.dumps(self.model_dump())
        except orjson.JSONEncodeError as e:
            # e.g. text with lone surrogates, which has no UTF-8 form
            raise MalformedMessage(f'Cannot encode {type(self).__name__}: {e}') from e

    @classmethod
    def Parse(cls, raw: bytes|bytearray|memoryview) -> Self:
        '''Decode bytes produced by `dump`. Raises `MalformedMessage` if the bytes do not match.'''
        if cls is Message:
            raise TypeError('Cannot parse into the abstract `Message`, use a concrete message type.')
        try:
            return cls.model_validate_json(bytes(raw))
        except ValidationError as e:
            reasons = '; '.join(f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors())
            raise MalformedMessage(f'Cannot decode {cls.__name__}: {reasons}') from e

class WelcomeRequest(Message):
    name: str
    '''the name to greet. Empty is valid.'''

class WelcomeResponse(Message):
    message: str
    '''the greeting built by the server.'''

_MT = TypeVar('_MT', bound=Message)

def encode(record: Message) -> bytes:
    return record.dump()

def decode(raw: bytes|bytearray|memoryview, message_type: type[_MT]) -> _MT:
    return message_type.Parse(raw)


__all__ = [
    'Message',
    'WelcomeRequest',
    'WelcomeResponse',
    'encode',
    'decode',
]
