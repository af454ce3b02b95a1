"""Application-wide configuration constants."""

import os
import platform
import uuid

# --- Identity ---
APP_NAME = "screenshare"
APP_VERSION = "2.0.0"
SERVICE_TYPE = "urn:screen-share:receiver"
# Unique per advertising process; appears in the USN header
INSTANCE_ID = str(uuid.uuid4())
SERVER_ID = f"{platform.system()}/{platform.release()} UPnP/1.1 {APP_NAME}/{APP_VERSION}"

# --- Discovery (SSDP) ---
SSDP_MULTICAST_GROUP = "239.255.255.250"
SSDP_PORT = int(os.environ.get("SCREENSHARE_SSDP_PORT", "1900"))
SSDP_MULTICAST_TTL = 2  # keep announcements on the local segment
SEARCH_MX = 3
SEARCH_REPEAT = 3
SEARCH_REPEAT_DELAY = 0.1  # seconds
DISCOVERY_TIMEOUT = 3  # seconds
MAX_RESPONSES = 30
REACHABILITY_TIMEOUT = 0.5  # seconds
ANNOUNCE_INTERVAL = 30  # seconds, also advertised as max-age
POLL_INTERVAL = 1.0  # upper bound on any wait that must observe shutdown

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("SCREENSHARE_API_PORT", "8765"))
STREAM_HOST = "0.0.0.0"
STREAM_PORT = int(os.environ.get("SCREENSHARE_STREAM_PORT", "8081"))
ADVERTISE_HOST = os.environ.get("SCREENSHARE_ADVERTISE_HOST")  # None = auto-detect

CONNECT_TIMEOUT = 5  # seconds
CONNECT_RETRIES = 3
RETRY_DELAY = 2  # seconds
HANDSHAKE_TIMEOUT = 5  # seconds
SESSION_IDLE_TIMEOUT = 10  # seconds without a byte before a session is dropped

# --- Stream ---
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
DEFAULT_FPS = 10
BYTES_PER_PIXEL = 3  # RGB24
MAX_HANDSHAKE_DIMENSION = 16384
MAX_HANDSHAKE_FPS = 240
SEND_BUFFER_SIZE = 4 * 1024 * 1024
WRITE_CHUNK_SIZE = 131072  # 128 KB
REPORT_INTERVAL = 5  # seconds
