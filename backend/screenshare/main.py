"""
Screen Share receiver: FastAPI application entry point.

Starts the stream receiver and the SSDP discovery service on startup,
serves the status API and the session event WebSocket.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from screenshare.api.routes import init_routes, router
from screenshare.api.websocket import SessionFeed
from screenshare.cancellation import CancelToken
from screenshare.config import API_HOST, API_PORT, APP_VERSION, STREAM_PORT
from screenshare.discovery.service import DiscoveryService
from screenshare.streaming.manager import StreamReceiver

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class LatestFrame:
    """Render sink that keeps the most recent complete frame for a display surface."""

    def __init__(self) -> None:
        self.frame: bytes | None = None
        self.count = 0

    def __call__(self, buffer: bytes) -> None:
        self.frame = buffer
        self.count += 1


# --- Service singletons ---
render_sink = LatestFrame()
stream_receiver = StreamReceiver(render_sink, port=STREAM_PORT)
discovery_service = DiscoveryService(STREAM_PORT)
session_feed = SessionFeed()


async def _wait_ready(task: asyncio.Task, ready: asyncio.Event) -> None:
    """Wait until a service is up, or re-raise why it could not start."""
    waiter = asyncio.create_task(ready.wait())
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if task in done:
        waiter.cancel()
        task.result()
        raise RuntimeError("service exited before it was ready")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting screen share services...")
    shutdown = CancelToken()
    tasks: list[asyncio.Task] = []

    try:
        stream_receiver.on_event(session_feed.publish)

        tasks.append(asyncio.create_task(stream_receiver.serve(shutdown)))
        await _wait_ready(tasks[-1], stream_receiver.ready)

        # Advertise the port we actually bound
        discovery_service.stream_port = stream_receiver.address[1]
        tasks.append(asyncio.create_task(discovery_service.advertise(shutdown)))
        await _wait_ready(tasks[-1], discovery_service.ready)

        logger.info(
            f"Screen share ready: API: {API_HOST}:{API_PORT}, "
            f"advertising {discovery_service.location}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down screen share services...")
        shutdown.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Service exited with error: {result}")


# --- FastAPI app ---
app = FastAPI(
    title="Screen Share",
    version=APP_VERSION,
    lifespan=lifespan,
)

# Inject services into routes
init_routes(discovery_service, stream_receiver)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await session_feed.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Session feed client went away")
    finally:
        await session_feed.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
