import time
import socket
import struct
import orjson
import asyncio

from enum import IntEnum
from dataclasses import dataclass
from pydantic import BaseModel, ValidationError

from .errors import MalformedMessage, StatusCode

# struct:
# [1 byte frame type]
# [2 bytes method name length]
# [4 bytes payload length]
# [method name (utf-8)]
# [payload]
_HEADER = struct.Struct('>BHI')
HEADER_SIZE = _HEADER.size
MAX_METHOD_NAME_SIZE = 0xFFFF
MAX_PAYLOAD_SIZE = 0xFFFFFFFF

class FrameType(IntEnum):
    REQUEST = 0x00
    RESPONSE = 0x80
    ERROR = 0x81

class ErrorDetail(BaseModel):
    '''payload of an ERROR frame.'''
    code: int
    '''a `StatusCode` value.'''
    message: str
    '''human readable reason.'''

    def dump(self) -> bytes:
        return orjson.dumps(self.model_dump())

    @classmethod
    def Parse(cls, raw: bytes) -> "ErrorDetail":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedMessage(f'Invalid error detail: {e.error_count()} validation error(s).') from e

@dataclass(frozen=True)
class Frame:
    type: FrameType
    method: str
    '''full method name, `service/method`.'''
    payload: bytes = b''

    @classmethod
    def Request(cls, method: str, payload: bytes) -> "Frame":
        return cls(FrameType.REQUEST, method, payload)

    @classmethod
    def Response(cls, method: str, payload: bytes) -> "Frame":
        return cls(FrameType.RESPONSE, method, payload)

    @classmethod
    def Error(cls, method: str, code: StatusCode|int, message: str) -> "Frame":
        return cls(FrameType.ERROR, method, ErrorDetail(code=int(code), message=message).dump())

    @property
    def error(self) -> ErrorDetail|None:
        if self.type != FrameType.ERROR:
            return None
        return ErrorDetail.Parse(self.payload)

    def dump(self) -> bytes:
        method_bytes = self.method.encode('utf-8')
        if len(method_bytes) > MAX_METHOD_NAME_SIZE:
            raise MalformedMessage(f'Method name too long: {len(method_bytes)} bytes.')
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise MalformedMessage(f'Payload too large: {len(self.payload)} bytes.')
        return _HEADER.pack(self.type, len(method_bytes), len(self.payload)) + method_bytes + self.payload

    @staticmethod
    def ParseHeader(raw: bytes) -> tuple[FrameType, int, int]:
        '''return (frame type, method name size, payload size).'''
        if len(raw) < HEADER_SIZE:
            raise MalformedMessage(f'Truncated frame header: {len(raw)} of {HEADER_SIZE} bytes.')
        type_value, method_size, payload_size = _HEADER.unpack(raw[:HEADER_SIZE])
        try:
            frame_type = FrameType(type_value)
        except ValueError:
            raise MalformedMessage(f'Unknown frame type: 0x{type_value:02x}.') from None
        return frame_type, method_size, payload_size

    @classmethod
    def Build(cls, frame_type: FrameType, method_bytes: bytes, payload: bytes) -> "Frame":
        try:
            method = method_bytes.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessage('Method name is not valid utf-8.') from e
        return cls(frame_type, method, payload)

    @classmethod
    def Parse(cls, raw: bytes) -> "Frame":
        '''parse exactly one complete frame.'''
        frame_type, method_size, payload_size = cls.ParseHeader(raw)
        expected = HEADER_SIZE + method_size + payload_size
        if len(raw) != expected:
            raise MalformedMessage(f'Frame size mismatch: expected {expected} bytes, got {len(raw)}.')
        body = raw[HEADER_SIZE:]
        return cls.Build(frame_type, bytes(body[:method_size]), bytes(body[method_size:]))

async def read_frame(reader: asyncio.StreamReader) -> Frame|None:
    '''
    Read one frame from an asyncio stream.
    Returns None if the peer closed the stream cleanly before a new frame.
    Raises `MalformedMessage` if the stream ends inside a frame, or the header is invalid.
    '''
    try:
        header = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise MalformedMessage(f'Truncated frame header: {len(e.partial)} of {HEADER_SIZE} bytes.') from e
    frame_type, method_size, payload_size = Frame.ParseHeader(header)
    try:
        method_bytes = await reader.readexactly(method_size)
        payload = await reader.readexactly(payload_size)
    except asyncio.IncompleteReadError as e:
        raise MalformedMessage('Stream closed in the middle of a frame.') from e
    return Frame.Build(frame_type, method_bytes, payload)

def _remaining(deadline: float|None) -> float|None:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError('Deadline exceeded.')
    return remaining

def recv_exactly(sock: socket.socket, size: int, deadline: float|None=None) -> bytes:
    '''
    Receive exactly `size` bytes from a blocking socket before `deadline` (`time.monotonic()` based).
    Raises `TimeoutError` when the deadline passes, `ConnectionResetError` if the peer closes.
    '''
    buffer = bytearray()
    while len(buffer) < size:
        sock.settimeout(_remaining(deadline))
        chunk = sock.recv(min(size - len(buffer), 1 * 1024 * 1024))
        if not chunk:
            raise ConnectionResetError(f'Connection closed by peer after {len(buffer)} of {size} bytes.')
        buffer += chunk
    return bytes(buffer)

def send_frame(sock: socket.socket, frame: Frame, deadline: float|None=None):
    data = frame.dump()
    sock.settimeout(_remaining(deadline))
    sock.sendall(data)

def recv_frame(sock: socket.socket, deadline: float|None=None) -> Frame:
    '''blocking counterpart of `read_frame`, bounded by `deadline`.'''
    header = recv_exactly(sock, HEADER_SIZE, deadline)
    frame_type, method_size, payload_size = Frame.ParseHeader(header)
    body = recv_exactly(sock, method_size + payload_size, deadline)
    return Frame.Build(frame_type, body[:method_size], body[method_size:])


__all__ = [
    'HEADER_SIZE',
    'FrameType',
    'ErrorDetail',
    'Frame',
    'read_frame',
    'recv_exactly',
    'send_frame',
    'recv_frame',
]
