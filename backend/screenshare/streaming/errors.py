"""Exceptions raised by the streaming layer."""


class StreamError(Exception):
    """Base class for streaming errors."""


class StreamProtocolError(StreamError):
    """The peer sent bytes that do not follow the stream wire format."""


class FrameSizeMismatch(StreamProtocolError):
    """
    A frame's length prefix differs from the size negotiated for the session.

    Frames never change size mid-session, so the stream is treated as
    corrupted and the session must end.
    """

    def __init__(self, announced: int, expected: int) -> None:
        super().__init__(f"frame length {announced} != expected {expected}")
        self.announced = announced
        self.expected = expected


class HandshakeError(StreamProtocolError):
    """The session handshake was short, degenerate or out of range."""


class PeerDisconnected(StreamError):
    """
    The connection closed or reset mid-session.

    `received` counts the bytes of the unit being read (handshake or frame)
    that arrived before the connection went away.
    """

    def __init__(self, message: str, received: int = 0) -> None:
        super().__init__(message)
        self.received = received


class SessionTimeout(StreamError):
    """The peer stopped sending for longer than the idle limit."""


class SessionCancelled(StreamError):
    """The session's CancelToken fired during I/O."""


class StreamConnectError(StreamError):
    """Could not establish a session with the receiver."""

    def __init__(self, address: str, port: int, attempts: int, reason: str) -> None:
        super().__init__(
            f"could not connect to {address}:{port} after {attempts} attempt(s): {reason}"
        )
        self.address = address
        self.port = port
        self.attempts = attempts
        self.reason = reason
