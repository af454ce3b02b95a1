"""REST API routes for the screen share status surface."""

import logging

from fastapi import APIRouter, HTTPException, Query

from screenshare.config import SERVICE_TYPE
from screenshare.discovery import client as discovery_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_stream_receiver = None


def init_routes(discovery_service, stream_receiver) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _stream_receiver
    _discovery_service = discovery_service
    _stream_receiver = stream_receiver


# --- Device Discovery ---

@router.get("/devices")
async def list_devices(
    timeout: float = Query(3.0, gt=0, le=30),
    verify: bool = True,
):
    """Run one discovery pass and return the receivers that answered."""
    devices = await discovery_client.discover(timeout, verify=verify)
    return {"devices": [d.model_dump() for d in devices]}


@router.get("/advertisement")
async def get_advertisement():
    """What this receiver is announcing on the LAN."""
    if _discovery_service is None:
        raise HTTPException(status_code=503, detail="Discovery service not running")
    return {
        "service_type": SERVICE_TYPE,
        "location": _discovery_service.location,
        "usn": _discovery_service.usn,
        **_discovery_service.stats,
    }


# --- Sessions ---

@router.get("/session")
async def get_session():
    """The active streaming session, if any, plus receiver totals."""
    if _stream_receiver is None:
        raise HTTPException(status_code=503, detail="Stream receiver not running")
    current = _stream_receiver.current_session
    last = _stream_receiver.last_session
    return {
        "session": current.model_dump() if current else None,
        "last_session": last.model_dump() if last else None,
        "sessions_served": _stream_receiver.sessions_served,
        "frames_received": _stream_receiver.frames_received,
    }
