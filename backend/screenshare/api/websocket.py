"""Live receiver session feed for dashboard clients on /ws."""

import asyncio
import logging

from fastapi import WebSocket
from pydantic import BaseModel

from screenshare.streaming.models import SessionInfo

logger = logging.getLogger(__name__)


class SessionEvent(BaseModel):
    """One message on the feed: what happened and the session it happened to."""
    event: str
    session: SessionInfo


class SessionFeed:
    """
    Fans StreamReceiver session events out to WebSocket clients.

    The latest event is kept, and a client that connects while a session is
    running receives it first, so it can render the current session without
    waiting for the next stats report.
    """

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._latest: SessionEvent | None = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def latest(self) -> SessionEvent | None:
        return self._latest

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            if self._latest is not None:
                await websocket.send_text(self._latest.model_dump_json())
            self._clients.append(websocket)
        logger.info(f"Session feed client connected. Total: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"Session feed client disconnected. Total: {len(self._clients)}")

    async def publish(self, event: str, session: SessionInfo) -> None:
        """Send a session event to every client; drop clients that fail."""
        message = SessionEvent(event=event, session=session)
        payload = message.model_dump_json()
        async with self._lock:
            self._latest = message
            alive: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(payload)
                except Exception as e:
                    logger.debug(f"Dropping session feed client: {e}")
                    continue
                alive.append(ws)
            self._clients = alive
