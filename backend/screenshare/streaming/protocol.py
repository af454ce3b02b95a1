"""
Framed stream protocol.

Handles the wire discipline for an established session: the one-time
handshake and the length-prefixed frames that follow it. Reads and
writes are loops over bounded waits so that a partial transfer, a silent
peer or a shutdown request is always noticed within POLL_INTERVAL.
"""

import asyncio
import logging

from screenshare.cancellation import CancelToken
from screenshare.config import (
    HANDSHAKE_TIMEOUT,
    POLL_INTERVAL,
    SESSION_IDLE_TIMEOUT,
    WRITE_CHUNK_SIZE,
)
from screenshare.streaming.codec import (
    FRAME_HEADER_SIZE,
    HANDSHAKE_SIZE,
    SessionHandshake,
    decode_frame_header,
    decode_handshake,
    encode_frame_header,
    encode_handshake,
)
from screenshare.streaming.errors import (
    FrameSizeMismatch,
    PeerDisconnected,
    SessionCancelled,
    SessionTimeout,
)

logger = logging.getLogger(__name__)


def _check_cancel(cancel: CancelToken | None) -> None:
    if cancel is not None and cancel.cancelled:
        raise SessionCancelled("session cancelled")


async def read_exactly(
    reader: asyncio.StreamReader,
    size: int,
    cancel: CancelToken | None = None,
    idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
) -> bytes:
    """
    Read exactly `size` bytes, accumulating partial reads.

    Raises PeerDisconnected on EOF or reset, SessionTimeout if no byte
    arrives for `idle_timeout` seconds, SessionCancelled if `cancel` fires.
    """
    buf = bytearray()
    idle = 0.0
    while len(buf) < size:
        _check_cancel(cancel)
        try:
            chunk = await asyncio.wait_for(reader.read(size - len(buf)), POLL_INTERVAL)
        except asyncio.TimeoutError:
            idle += POLL_INTERVAL
            if idle_timeout is not None and idle >= idle_timeout:
                raise SessionTimeout(f"no data for {idle:.0f}s ({len(buf)} of {size} bytes read)")
            continue
        except OSError as e:
            raise PeerDisconnected(f"read failed: {e}", received=len(buf)) from e
        if not chunk:
            raise PeerDisconnected(
                f"peer closed after {len(buf)} of {size} bytes", received=len(buf)
            )
        idle = 0.0
        buf += chunk
    return bytes(buf)


async def _drain(
    writer: asyncio.StreamWriter,
    cancel: CancelToken | None,
    idle_timeout: float | None,
) -> None:
    waited = 0.0
    while True:
        try:
            await asyncio.wait_for(writer.drain(), POLL_INTERVAL)
            return
        except asyncio.TimeoutError:
            waited += POLL_INTERVAL
            _check_cancel(cancel)
            if idle_timeout is not None and waited >= idle_timeout:
                raise SessionTimeout(f"peer stopped reading for {waited:.0f}s")
        except OSError as e:
            raise PeerDisconnected(f"write failed: {e}") from e


async def write_all(
    writer: asyncio.StreamWriter,
    data: bytes,
    cancel: CancelToken | None = None,
    idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
) -> None:
    """Write `data` in WRITE_CHUNK_SIZE slices, draining after each one."""
    view = memoryview(data)
    for offset in range(0, len(view), WRITE_CHUNK_SIZE):
        _check_cancel(cancel)
        if writer.is_closing():
            raise PeerDisconnected("connection closed while writing")
        writer.write(view[offset:offset + WRITE_CHUNK_SIZE])
        await _drain(writer, cancel, idle_timeout)


async def send_frame(
    writer: asyncio.StreamWriter,
    payload: bytes,
    cancel: CancelToken | None = None,
    idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
) -> int:
    """Send one length-prefixed frame. Returns the number of bytes put on the wire."""
    header = encode_frame_header(len(payload))
    await write_all(writer, header, cancel, idle_timeout)
    await write_all(writer, payload, cancel, idle_timeout)
    return FRAME_HEADER_SIZE + len(payload)


async def receive_frame(
    reader: asyncio.StreamReader,
    expected_size: int,
    cancel: CancelToken | None = None,
    idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
) -> bytes:
    """
    Receive one frame of exactly `expected_size` bytes.

    A length prefix that differs from `expected_size` raises
    FrameSizeMismatch before any payload is read.
    """
    header = await read_exactly(reader, FRAME_HEADER_SIZE, cancel, idle_timeout)
    length = decode_frame_header(header)
    if length != expected_size:
        raise FrameSizeMismatch(length, expected_size)
    try:
        return await read_exactly(reader, length, cancel, idle_timeout)
    except PeerDisconnected as e:
        # Count the header toward what arrived
        raise PeerDisconnected(str(e), received=FRAME_HEADER_SIZE + e.received) from e


async def send_handshake(
    writer: asyncio.StreamWriter,
    handshake: SessionHandshake,
    cancel: CancelToken | None = None,
) -> None:
    await write_all(writer, encode_handshake(handshake), cancel, HANDSHAKE_TIMEOUT)


async def receive_handshake(
    reader: asyncio.StreamReader,
    cancel: CancelToken | None = None,
    timeout: float = HANDSHAKE_TIMEOUT,
) -> SessionHandshake:
    """Read and validate the producer's handshake."""
    data = await read_exactly(reader, HANDSHAKE_SIZE, cancel, timeout)
    return decode_handshake(data)

