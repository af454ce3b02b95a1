"""
Byte-level encoding for the stream wire format.

    handshake: [width u32][height u32][fps u32]   (12 bytes, big-endian)
    frame:     [length u32][length bytes]         (repeated)
"""

import struct

from pydantic import BaseModel, Field, ValidationError

from screenshare.config import BYTES_PER_PIXEL, MAX_HANDSHAKE_DIMENSION, MAX_HANDSHAKE_FPS
from screenshare.streaming.errors import HandshakeError, StreamProtocolError

FRAME_HEADER_FORMAT = "!I"
FRAME_HEADER_SIZE = struct.calcsize(FRAME_HEADER_FORMAT)
HANDSHAKE_FORMAT = "!III"
HANDSHAKE_SIZE = struct.calcsize(HANDSHAKE_FORMAT)
U32_MAX = 0xFFFFFFFF


class SessionHandshake(BaseModel):
    """Stream geometry the producer announces once at session start."""
    width: int = Field(gt=0, le=MAX_HANDSHAKE_DIMENSION)
    height: int = Field(gt=0, le=MAX_HANDSHAKE_DIMENSION)
    fps: int = Field(gt=0, le=MAX_HANDSHAKE_FPS)

    @property
    def frame_size(self) -> int:
        return self.width * self.height * BYTES_PER_PIXEL


def encode_frame_header(length: int) -> bytes:
    if not 0 <= length <= U32_MAX:
        raise StreamProtocolError(f"frame length {length} does not fit in 32 bits")
    return struct.pack(FRAME_HEADER_FORMAT, length)


def decode_frame_header(data: bytes) -> int:
    if len(data) != FRAME_HEADER_SIZE:
        raise StreamProtocolError(f"frame header is {len(data)} bytes, need {FRAME_HEADER_SIZE}")
    return struct.unpack(FRAME_HEADER_FORMAT, data)[0]


def encode_handshake(handshake: SessionHandshake) -> bytes:
    return struct.pack(HANDSHAKE_FORMAT, handshake.width, handshake.height, handshake.fps)


def decode_handshake(data: bytes) -> SessionHandshake:
    """Parse and validate a 12-byte handshake."""
    if len(data) != HANDSHAKE_SIZE:
        raise HandshakeError(f"handshake is {len(data)} bytes, need {HANDSHAKE_SIZE}")
    width, height, fps = struct.unpack(HANDSHAKE_FORMAT, data)
    try:
        return SessionHandshake(width=width, height=height, fps=fps)
    except ValidationError as e:
        raise HandshakeError(f"rejected handshake {width}x{height}@{fps}: {e.errors()[0]['msg']}") from e
