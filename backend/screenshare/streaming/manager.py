"""
Session manager: owns the TCP side of a screen share.

StreamReceiver listens for one producer at a time and keeps listening
across disconnects; StreamSender resolves a receiver, connects with a
deadline, and pushes frames until the connection ends.
"""

import asyncio
import logging
import socket
import time
import uuid
from typing import Awaitable, Callable

from screenshare.cancellation import CancelToken
from screenshare.config import (
    CONNECT_RETRIES,
    CONNECT_TIMEOUT,
    DEFAULT_FPS,
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
    DISCOVERY_TIMEOUT,
    POLL_INTERVAL,
    REPORT_INTERVAL,
    RETRY_DELAY,
    SEND_BUFFER_SIZE,
    SESSION_IDLE_TIMEOUT,
    STREAM_HOST,
    STREAM_PORT,
)
from screenshare.discovery.client import discover, format_device_list
from screenshare.discovery.models import DeviceRecord
from screenshare.streaming.codec import FRAME_HEADER_SIZE, SessionHandshake
from screenshare.streaming.errors import (
    PeerDisconnected,
    SessionCancelled,
    StreamConnectError,
    StreamError,
    StreamProtocolError,
)
from screenshare.streaming.models import (
    SessionInfo,
    SessionRole,
    SessionState,
    ThroughputWindow,
)
from screenshare.streaming.protocol import (
    receive_frame,
    receive_handshake,
    send_frame,
    send_handshake,
)

logger = logging.getLogger(__name__)

ProduceFrame = Callable[[], bytes]
ConsumeFrame = Callable[[bytes], None]
EventCallback = Callable[[str, SessionInfo], Awaitable[None]]


def tune_socket(sock) -> None:
    """Disable Nagle and enlarge the send buffer for bulk frame writes."""
    if sock is None:
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as e:
        logger.debug(f"TCP_NODELAY not applied: {e}")
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, SEND_BUFFER_SIZE)
    except OSError as e:
        logger.debug(f"SO_SNDBUF not applied: {e}")


class StreamReceiver:
    """Consumer side: accept producers one at a time and hand frames to a render sink."""

    def __init__(
        self,
        consume_frame: ConsumeFrame,
        *,
        host: str = STREAM_HOST,
        port: int = STREAM_PORT,
        handshake: bool = True,
        default_handshake: SessionHandshake | None = None,
        idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
        report_interval: float = REPORT_INTERVAL,
    ) -> None:
        self._consume_frame = consume_frame
        self._host = host
        self._port = port
        self._handshake = handshake
        self._default_handshake = default_handshake or SessionHandshake(
            width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT, fps=DEFAULT_FPS
        )
        self._idle_timeout = idle_timeout
        self._report_interval = report_interval
        self._event_callbacks: list[EventCallback] = []
        self._address: tuple[str, int] | None = None
        self._current: SessionInfo | None = None
        self._last: SessionInfo | None = None

        self.ready = asyncio.Event()
        self.sessions_served = 0
        self.frames_received = 0

    @property
    def address(self) -> tuple[str, int] | None:
        """Bound listening address, available once `ready` is set."""
        return self._address

    @property
    def current_session(self) -> SessionInfo | None:
        return self._current

    @property
    def last_session(self) -> SessionInfo | None:
        return self._last

    def on_event(self, callback: EventCallback) -> None:
        """Register callback: async fn(event_type: str, session: SessionInfo)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, info: SessionInfo) -> None:
        # Callbacks get a snapshot; the live session keeps changing
        snapshot = info.model_copy()
        for cb in self._event_callbacks:
            try:
                await cb(event_type, snapshot)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _open_listener(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._port))
            # One active producer; others wait in the backlog
            sock.listen(1)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def serve(self, cancel: CancelToken) -> None:
        """
        Accept and run sessions until `cancel` fires.

        Raises OSError if the listening socket cannot be set up.
        """
        loop = asyncio.get_running_loop()
        try:
            listener = self._open_listener()
        except OSError as e:
            logger.error(f"Screen receiver could not listen on {self._host}:{self._port}: {e}")
            raise

        self._address = listener.getsockname()[:2]
        self.ready.set()
        logger.info(f"Screen receiver listening on port {self._address[1]}")

        try:
            while not cancel.cancelled:
                try:
                    conn, peer = await asyncio.wait_for(loop.sock_accept(listener), POLL_INTERVAL)
                except asyncio.TimeoutError:
                    continue
                except OSError as e:
                    logger.warning(f"Accept failed: {e}")
                    await cancel.wait(POLL_INTERVAL)
                    continue
                await self.run_session(conn, peer, cancel)
        finally:
            listener.close()
            self.ready.clear()
            logger.info("Screen receiver stopped")

    async def run_session(
        self, conn: socket.socket, peer: tuple[str, int], cancel: CancelToken
    ) -> SessionInfo:
        """
        Handshake, then receive frames until the producer goes away.

        A peer that disconnects without sending a single byte (a discovering
        sender checking that the port is open) is closed quietly: it is not
        counted, not kept as the last session and not reported to listeners.
        """
        info = SessionInfo(
            session_id=str(uuid.uuid4()),
            role=SessionRole.CONSUMER,
            peer_address=peer[0],
            peer_port=peer[1],
        )
        self._current = info
        writer: asyncio.StreamWriter | None = None
        empty_connection = False

        try:
            reader, writer = await asyncio.open_connection(sock=conn)
            logger.debug(f"Accepted connection from {peer[0]}:{peer[1]}")

            if self._handshake:
                info.transition(SessionState.HANDSHAKING)
                geometry = await receive_handshake(reader, cancel)
                await self._start(info, geometry)
            else:
                geometry = self._default_handshake
            await self._receive_frames(reader, info, geometry, cancel)

        except SessionCancelled:
            info.close("receiver shutting down")
        except PeerDisconnected as e:
            if e.received == 0 and info.state != SessionState.STREAMING:
                empty_connection = True
            else:
                logger.warning(f"Screen sender disconnected: {e}")
                info.close(str(e))
        except StreamError as e:
            logger.warning(f"Screen sender disconnected: {e}")
            info.close(str(e))
        except OSError as e:
            logger.warning(f"Session I/O error: {e}")
            info.close(str(e))
        except Exception as e:
            logger.error(f"Render sink failed, dropping session: {e}", exc_info=True)
            info.close(str(e))
        finally:
            if not info.is_closed:
                info.close()
            if writer:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass
            else:
                conn.close()
            self._current = None

        if empty_connection:
            logger.debug(f"{peer[0]}:{peer[1]} closed without sending data")
            return info

        self._last = info
        self.sessions_served += 1
        logger.info(f"Connection closed: {info.summary()}")
        await self._emit("session_closed", info)
        return info

    async def _start(self, info: SessionInfo, geometry: SessionHandshake) -> None:
        info.width, info.height, info.fps = geometry.width, geometry.height, geometry.fps
        info.transition(SessionState.STREAMING)
        logger.info(
            f"Receiving {geometry.width}x{geometry.height} @ {geometry.fps} fps "
            f"from {info.peer_address}:{info.peer_port}"
        )
        await self._emit("session_started", info)

    async def _receive_frames(
        self,
        reader: asyncio.StreamReader,
        info: SessionInfo,
        geometry: SessionHandshake,
        cancel: CancelToken,
    ) -> None:
        throughput = ThroughputWindow()
        last_report = time.monotonic()
        while True:
            payload = await receive_frame(reader, geometry.frame_size, cancel, self._idle_timeout)
            if info.state != SessionState.STREAMING:
                # Without a handshake the first frame is what opens the session
                await self._start(info, geometry)
            # Only complete frames reach the sink
            self._consume_frame(payload)

            wire_bytes = FRAME_HEADER_SIZE + len(payload)
            info.record_frame(wire_bytes)
            self.frames_received += 1
            throughput.add_frame(wire_bytes)

            now = time.monotonic()
            if now - last_report >= self._report_interval:
                throughput.apply(info)
                await self._emit("session_stats", info)
                last_report = now


class StreamSender:
    """Producer side: connect to a receiver and push frames from a capture source."""

    def __init__(
        self,
        produce_frame: ProduceFrame,
        *,
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
        fps: int = DEFAULT_FPS,
        handshake: bool = True,
        report_interval: float = REPORT_INTERVAL,
        on_report: Callable[[SessionInfo], None] | None = None,
        idle_timeout: float | None = SESSION_IDLE_TIMEOUT,
    ) -> None:
        self._produce_frame = produce_frame
        self._geometry = SessionHandshake(width=width, height=height, fps=fps)
        self._handshake = handshake
        self._report_interval = report_interval
        self._on_report = on_report
        self._idle_timeout = idle_timeout

    @property
    def geometry(self) -> SessionHandshake:
        return self._geometry

    async def connect(
        self,
        address: str,
        port: int,
        *,
        timeout: float = CONNECT_TIMEOUT,
        retries: int = 0,
        cancel: CancelToken | None = None,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Open a tuned TCP connection, giving each attempt `timeout` seconds.

        Raises StreamConnectError once `retries` extra attempts are exhausted.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(address, port), timeout
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {timeout}s"
            except OSError as e:
                reason = str(e) or type(e).__name__
            else:
                tune_socket(writer.get_extra_info("socket"))
                logger.info(f"Connected to receiver {address}:{port}")
                return reader, writer

            logger.warning(f"Connection attempt {attempts} to {address}:{port} failed: {reason}")
            if attempts > retries:
                break
            if cancel is not None:
                if await cancel.wait(RETRY_DELAY):
                    break
            else:
                await asyncio.sleep(RETRY_DELAY)

        logger.error(f"Giving up on {address}:{port} after {attempts} attempt(s)")
        raise StreamConnectError(address, port, attempts, reason)

    async def stream_to(
        self,
        address: str,
        port: int,
        cancel: CancelToken,
        *,
        timeout: float = CONNECT_TIMEOUT,
        retries: int = CONNECT_RETRIES,
    ) -> SessionInfo:
        """
        Stream frames to address:port until the connection fails or `cancel` fires.

        Returns the closed session with its totals. Raises StreamConnectError
        if no connection could be made.
        """
        info = SessionInfo(
            session_id=str(uuid.uuid4()),
            role=SessionRole.PRODUCER,
            peer_address=address,
            peer_port=port,
            width=self._geometry.width,
            height=self._geometry.height,
            fps=self._geometry.fps,
        )
        try:
            _, writer = await self.connect(
                address, port, timeout=timeout, retries=retries, cancel=cancel
            )
        except StreamConnectError as e:
            info.close(str(e))
            raise

        try:
            if self._handshake:
                info.transition(SessionState.HANDSHAKING)
                await send_handshake(writer, self._geometry, cancel)
            info.transition(SessionState.STREAMING)
            logger.info(
                f"Streaming {self._geometry.width}x{self._geometry.height} "
                f"@ {self._geometry.fps} fps to {address}:{port}"
            )
            await self._send_frames(writer, info, cancel)
        except SessionCancelled:
            pass
        except StreamError as e:
            logger.warning(f"Receiver disconnected: {e}")
            info.close(str(e))
        finally:
            if not info.is_closed:
                info.close()
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            logger.info(f"Stream ended: {info.summary()}")

        return info

    async def _send_frames(
        self, writer: asyncio.StreamWriter, info: SessionInfo, cancel: CancelToken
    ) -> None:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self._geometry.fps
        frame_size = self._geometry.frame_size
        throughput = ThroughputWindow()
        last_report = time.monotonic()

        while not cancel.cancelled:
            started = loop.time()
            payload = await asyncio.to_thread(self._produce_frame)
            if len(payload) != frame_size:
                raise StreamProtocolError(
                    f"capture source produced {len(payload)} bytes, expected {frame_size}"
                )

            sent = await send_frame(writer, payload, cancel, self._idle_timeout)
            info.record_frame(sent)
            throughput.add_frame(sent)

            now = time.monotonic()
            if now - last_report >= self._report_interval:
                self._report(info, throughput)
                last_report = now

            remaining = interval - (loop.time() - started)
            if remaining > 0:
                await cancel.wait(remaining)

    def _report(self, info: SessionInfo, throughput: ThroughputWindow) -> None:
        throughput.apply(info)
        logger.info(
            f"{info.frames_per_second:.1f} fps, "
            f"{info.bytes_per_second / 1_000_000:.2f} MB/s ({info.frames} frames sent)"
        )
        if self._on_report:
            self._on_report(info)

    async def discover_and_stream(
        self,
        cancel: CancelToken,
        *,
        choose: Callable[[list[DeviceRecord]], DeviceRecord | None] | None = None,
        discovery_timeout: float = DISCOVERY_TIMEOUT,
        verify: bool = True,
        search_target: tuple[str, int] | None = None,
    ) -> SessionInfo | None:
        """
        Find a receiver and stream to it.

        `choose` picks from the discovered list (the first one by default).
        Returns None if nothing was found or nothing was chosen.
        """
        devices = await discover(
            discovery_timeout, verify=verify, search_target=search_target, cancel=cancel
        )
        if not devices:
            logger.info(format_device_list(devices).strip())
            return None

        device = choose(devices) if choose else devices[0]
        if device is None:
            logger.info("No receiver selected")
            return None
        return await self.stream_to(device.address, device.port, cancel)
