# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import logging
import socket

import pytest

from screenshare.cancellation import CancelToken
from screenshare.discovery.client import is_reachable
from screenshare.streaming.codec import SessionHandshake, encode_frame_header, encode_handshake
from screenshare.streaming.errors import StreamConnectError
from screenshare.streaming.manager import StreamReceiver, StreamSender, tune_socket
from screenshare.streaming.models import SessionInfo, SessionRole, SessionState
from screenshare.streaming.protocol import send_frame, send_handshake

LOOPBACK = "127.0.0.1"


def free_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK, 0))
        return sock.getsockname()[1]


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FrameSink:
    def __init__(self) -> None:
        self.frames: list[bytes] = []

    def __call__(self, buffer: bytes) -> None:
        self.frames.append(buffer)


async def start_receiver(sink, **kwargs):
    receiver = StreamReceiver(sink, host=LOOPBACK, port=0, **kwargs)
    cancel = CancelToken()
    task = asyncio.create_task(receiver.serve(cancel))
    await asyncio.wait_for(receiver.ready.wait(), 2)
    return receiver, cancel, task


async def stop_receiver(cancel: CancelToken, task: asyncio.Task) -> None:
    cancel.cancel()
    await asyncio.wait_for(task, 5)


# ---------------------------------------------------------------------
# Consumer side
# ---------------------------------------------------------------------

def test_mid_stream_disconnect_then_resume_accepting():
    frame_size = 640 * 480 * 3
    frames = [bytes([1]) * frame_size, bytes([2]) * frame_size]

    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(sink)
        port = receiver.address[1]
        try:
            _, writer = await asyncio.open_connection(LOOPBACK, port)
            await send_handshake(writer, SessionHandshake(width=640, height=480, fps=10))
            for frame in frames:
                await send_frame(writer, frame)
            await wait_until(lambda: len(sink.frames) == 2)
            writer.transport.abort()
            await wait_until(lambda: receiver.sessions_served == 1)
            first = receiver.last_session

            # A new producer is served after the first one vanished
            _, writer = await asyncio.open_connection(LOOPBACK, port)
            await send_handshake(writer, SessionHandshake(width=2, height=2, fps=1))
            await send_frame(writer, b"\x07" * 12)
            await wait_until(lambda: len(sink.frames) == 3)
            writer.close()
            await wait_until(lambda: receiver.sessions_served == 2)
        finally:
            await stop_receiver(cancel, task)
        return sink, first, receiver

    sink, first, receiver = asyncio.run(scenario())

    assert sink.frames[:2] == frames
    assert sink.frames[2] == b"\x07" * 12
    assert first.state == SessionState.CLOSED
    assert first.role == SessionRole.CONSUMER
    assert (first.width, first.height, first.fps) == (640, 480, 10)
    assert first.frames == 2
    assert first.bytes_transferred == 2 * (4 + frame_size)
    assert first.error_message
    assert receiver.frames_received == 3
    assert receiver.current_session is None


def test_length_mismatch_closes_session_without_delivering():
    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(sink)
        try:
            _, writer = await asyncio.open_connection(LOOPBACK, receiver.address[1])
            writer.write(encode_handshake(SessionHandshake(width=4, height=4, fps=1)))
            writer.write(encode_frame_header(47) + b"x" * 47)
            await writer.drain()
            await wait_until(lambda: receiver.sessions_served == 1)
            writer.close()
        finally:
            await stop_receiver(cancel, task)
        return sink, receiver.last_session

    sink, session = asyncio.run(scenario())

    assert sink.frames == []
    assert session.is_closed
    assert "frame length 47 != expected 48" in session.error_message


def test_degenerate_handshake_closes_session():
    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(sink)
        try:
            _, writer = await asyncio.open_connection(LOOPBACK, receiver.address[1])
            writer.write((0).to_bytes(4, "big") * 3)
            await writer.drain()
            await wait_until(lambda: receiver.sessions_served == 1)
            writer.close()
        finally:
            await stop_receiver(cancel, task)
        return receiver.last_session

    session = asyncio.run(scenario())

    assert session.is_closed
    assert session.frames == 0
    assert "rejected handshake" in session.error_message


def test_receiver_without_handshake_uses_default_geometry():
    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(
            sink, handshake=False, default_handshake=SessionHandshake(width=2, height=1, fps=5)
        )
        try:
            _, writer = await asyncio.open_connection(LOOPBACK, receiver.address[1])
            await send_frame(writer, b"abcdef")
            await wait_until(lambda: len(sink.frames) == 1)
            writer.close()
            await wait_until(lambda: receiver.sessions_served == 1)
        finally:
            await stop_receiver(cancel, task)
        return sink

    assert asyncio.run(scenario()).frames == [b"abcdef"]


def test_receiver_emits_session_events():
    events: list[tuple[str, SessionInfo]] = []

    async def record(event_type: str, session: SessionInfo) -> None:
        events.append((event_type, session))

    async def scenario():
        sink = FrameSink()
        receiver = StreamReceiver(sink, host=LOOPBACK, port=0)
        receiver.on_event(record)
        cancel = CancelToken()
        task = asyncio.create_task(receiver.serve(cancel))
        await asyncio.wait_for(receiver.ready.wait(), 2)
        try:
            _, writer = await asyncio.open_connection(LOOPBACK, receiver.address[1])
            await send_handshake(writer, SessionHandshake(width=1, height=1, fps=1))
            await send_frame(writer, b"rgb")
            await wait_until(lambda: len(sink.frames) == 1)
            writer.close()
            await wait_until(lambda: receiver.sessions_served == 1)
        finally:
            await stop_receiver(cancel, task)

    asyncio.run(scenario())

    assert [e for e, _ in events] == ["session_started", "session_closed"]
    started, closed = events[0][1], events[1][1]
    assert started.state == SessionState.STREAMING
    assert started.frames == 0
    assert closed.state == SessionState.CLOSED
    assert closed.frames == 1


@pytest.mark.parametrize("handshake", [True, False])
def test_reachability_check_is_not_counted_as_session(handshake, caplog):
    geometry = SessionHandshake(width=1, height=1, fps=1)
    events: list[str] = []

    async def record(event_type: str, session: SessionInfo) -> None:
        events.append(event_type)

    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(
            sink, handshake=handshake, default_handshake=geometry
        )
        receiver.on_event(record)
        try:
            reachable = await is_reachable(*receiver.address)
            # Sessions run one at a time, so this one is served after the check
            _, writer = await asyncio.open_connection(*receiver.address)
            if handshake:
                await send_handshake(writer, geometry)
            await send_frame(writer, b"rgb")
            await wait_until(lambda: len(sink.frames) == 1)
            writer.close()
            await wait_until(lambda: receiver.sessions_served == 1)
        finally:
            await stop_receiver(cancel, task)
        return reachable, receiver

    reachable, receiver = asyncio.run(scenario())

    assert reachable is True
    assert receiver.sessions_served == 1
    assert receiver.last_session.frames == 1
    assert events == ["session_started", "session_closed"]
    disconnects = [
        r for r in caplog.records
        if r.levelno >= logging.WARNING and "Screen sender disconnected" in r.getMessage()
    ]
    assert len(disconnects) == 1


def test_receiver_shutdown_is_bounded_with_idle_producer():
    async def scenario():
        receiver, cancel, task = await start_receiver(FrameSink())
        _, writer = await asyncio.open_connection(LOOPBACK, receiver.address[1])
        await send_handshake(writer, SessionHandshake(width=1, height=1, fps=1))
        await wait_until(lambda: receiver.current_session is not None
                         and receiver.current_session.state == SessionState.STREAMING)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await stop_receiver(cancel, task)
        elapsed = loop.time() - started
        writer.close()
        return elapsed, receiver.last_session

    elapsed, session = asyncio.run(scenario())

    assert elapsed < 3.0
    assert session.error_message == "receiver shutting down"


def test_listen_failure_is_raised():
    async def scenario():
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind((LOOPBACK, 0))
        blocker.listen(1)
        try:
            receiver = StreamReceiver(FrameSink(), host=LOOPBACK, port=blocker.getsockname()[1])
            with pytest.raises(OSError):
                await receiver.serve(CancelToken())
        finally:
            blocker.close()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Producer side
# ---------------------------------------------------------------------

def test_sender_streams_until_cancelled():
    geometry = SessionHandshake(width=8, height=8, fps=50)
    counter = {"n": 0}

    def produce() -> bytes:
        counter["n"] += 1
        return bytes([counter["n"] % 256]) * geometry.frame_size

    async def scenario():
        sink = FrameSink()
        receiver, cancel, task = await start_receiver(sink)
        sender = StreamSender(produce, width=8, height=8, fps=50)
        stop_sending = CancelToken()
        try:
            send_task = asyncio.create_task(
                sender.stream_to(LOOPBACK, receiver.address[1], stop_sending)
            )
            await wait_until(lambda: len(sink.frames) >= 3)
            stop_sending.cancel()
            info = await asyncio.wait_for(send_task, 5)
            await wait_until(lambda: receiver.sessions_served == 1)
        finally:
            await stop_receiver(cancel, task)
        return sink, info

    sink, info = asyncio.run(scenario())

    assert info.role == SessionRole.PRODUCER
    assert info.state == SessionState.CLOSED
    assert info.frames >= 3
    assert info.bytes_transferred == info.frames * (4 + 8 * 8 * 3)
    assert len(sink.frames) == info.frames
    assert sink.frames[0] == b"\x01" * 192
    assert sink.frames[2] == b"\x03" * 192


def test_sender_stops_on_wrong_size_capture():
    async def scenario():
        receiver, cancel, task = await start_receiver(FrameSink())
        sender = StreamSender(lambda: b"short", width=4, height=4, fps=10)
        try:
            info = await asyncio.wait_for(
                sender.stream_to(LOOPBACK, receiver.address[1], CancelToken()), 5
            )
        finally:
            await stop_receiver(cancel, task)
        return info

    info = asyncio.run(scenario())

    assert info.is_closed
    assert info.frames == 0
    assert "expected 48" in info.error_message


def test_connect_refused_raises_with_details():
    port = free_tcp_port()

    async def scenario():
        sender = StreamSender(lambda: b"", width=1, height=1, fps=1)
        with pytest.raises(StreamConnectError) as exc_info:
            await sender.stream_to(LOOPBACK, port, CancelToken(), timeout=1, retries=0)
        return exc_info.value

    error = asyncio.run(scenario())

    assert error.address == LOOPBACK
    assert error.port == port
    assert error.attempts == 1


def test_connect_retries_are_bounded(monkeypatch):
    import screenshare.streaming.manager as manager_mod

    monkeypatch.setattr(manager_mod, "RETRY_DELAY", 0.01)
    port = free_tcp_port()

    async def scenario():
        sender = StreamSender(lambda: b"", width=1, height=1, fps=1)
        with pytest.raises(StreamConnectError) as exc_info:
            await sender.connect(LOOPBACK, port, timeout=1, retries=2)
        return exc_info.value

    assert asyncio.run(scenario()).attempts == 3


def test_discover_and_stream_without_receivers():
    async def scenario():
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as silent:
            silent.bind((LOOPBACK, 0))
            sender = StreamSender(lambda: b"", width=1, height=1, fps=1)
            return await sender.discover_and_stream(
                CancelToken(), discovery_timeout=0.2, search_target=silent.getsockname()
            )

    assert asyncio.run(scenario()) is None


def test_tune_socket_applies_options():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        tune_socket(sock)

        assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) == 1
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF) > 0


def test_tune_socket_tolerates_missing_socket():
    tune_socket(None)
