"""Pydantic models for streaming sessions."""

import time
from collections import deque
from enum import Enum

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Lifecycle of one producer/consumer connection."""
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    STREAMING = "streaming"
    CLOSED = "closed"


class SessionRole(str, Enum):
    PRODUCER = "producer"
    CONSUMER = "consumer"


_ALLOWED_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.HANDSHAKING, SessionState.STREAMING, SessionState.CLOSED},
    SessionState.HANDSHAKING: {SessionState.STREAMING, SessionState.CLOSED},
    SessionState.STREAMING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class SessionInfo(BaseModel):
    """Runtime state and counters for one streaming session."""
    session_id: str
    role: SessionRole
    peer_address: str
    peer_port: int
    state: SessionState = SessionState.CONNECTING
    width: int = 0
    height: int = 0
    fps: int = 0
    frames: int = 0
    bytes_transferred: int = 0
    frames_per_second: float = 0.0
    bytes_per_second: float = 0.0
    started_at: float = Field(default_factory=time.time)
    ended_at: float | None = None
    error_message: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def transition(self, state: SessionState) -> None:
        """Move to `state`. CLOSED is terminal."""
        if state == self.state:
            return
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"illegal session transition {self.state.value} -> {state.value}")
        self.state = state
        if state == SessionState.CLOSED:
            self.ended_at = time.time()

    def close(self, error: str | None = None) -> None:
        if error and self.error_message is None:
            self.error_message = error
        self.transition(SessionState.CLOSED)

    def record_frame(self, wire_bytes: int) -> None:
        self.frames += 1
        self.bytes_transferred += wire_bytes

    def duration(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.started_at)

    def summary(self) -> str:
        elapsed = self.duration()
        avg_fps = self.frames / elapsed if elapsed > 0 else 0.0
        return (
            f"{self.frames} frames, {self.bytes_transferred / 1_000_000:.1f} MB "
            f"in {elapsed:.1f}s ({avg_fps:.1f} fps avg)"
        )


class ThroughputWindow:
    """
    Frame and byte rates of a session over its last `window` seconds.

    The oldest frame in the window only marks where the window starts, so
    its bytes are not counted against the elapsed time.
    """

    def __init__(self, window: float = 2.0) -> None:
        self._window = window
        self._frames: deque[tuple[float, int]] = deque()

    def add_frame(self, wire_bytes: int, now: float | None = None) -> None:
        if now is None:
            now = time.monotonic()
        self._frames.append((now, wire_bytes))
        while now - self._frames[0][0] > self._window:
            self._frames.popleft()

    def apply(self, info: SessionInfo) -> None:
        """Store the current rates on `info`."""
        info.frames_per_second = 0.0
        info.bytes_per_second = 0.0
        if len(self._frames) < 2:
            return
        elapsed = self._frames[-1][0] - self._frames[0][0]
        if elapsed <= 0:
            return
        counted = list(self._frames)[1:]
        info.frames_per_second = len(counted) / elapsed
        info.bytes_per_second = sum(size for _, size in counted) / elapsed
