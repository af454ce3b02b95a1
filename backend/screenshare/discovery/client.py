"""
SSDP search client.

Sends an M-SEARCH for screen receivers, collects the unicast answers for
the discovery window, deduplicates them and optionally keeps only the
ones that accept a TCP connection right now.
"""

import asyncio
import logging
import socket

from screenshare.cancellation import CancelToken
from screenshare.config import (
    DISCOVERY_TIMEOUT,
    MAX_RESPONSES,
    REACHABILITY_TIMEOUT,
    SEARCH_MX,
    SEARCH_REPEAT,
    SEARCH_REPEAT_DELAY,
    SERVICE_TYPE,
    SSDP_MULTICAST_GROUP,
    SSDP_MULTICAST_TTL,
    SSDP_PORT,
    STREAM_PORT,
)
from screenshare.discovery.models import DeviceRecord, Registry
from screenshare.discovery.ssdp import (
    ParseFailure,
    build_search_request,
    parse_location,
    parse_message,
)

logger = logging.getLogger(__name__)


class DatagramInbox(asyncio.DatagramProtocol):
    """Queues every datagram received on a UDP socket."""

    def __init__(self) -> None:
        self.datagrams: asyncio.Queue[tuple[bytes, tuple[str, int]]] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.datagrams.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Discovery socket error: {exc}")


def _open_search_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, SSDP_MULTICAST_TTL)
        sock.setblocking(False)
        sock.bind(("0.0.0.0", 0))
    except OSError:
        sock.close()
        raise
    return sock


async def is_reachable(address: str, port: int, timeout: float = REACHABILITY_TIMEOUT) -> bool:
    """Return True if a TCP connection to address:port succeeds within `timeout`."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def _record_response(
    registry: Registry, data: bytes, addr: tuple[str, int]
) -> bool:
    """
    Add a response datagram to the registry.

    Returns True if the datagram was a search response from a screen
    receiver, whether or not that receiver was already known.
    """
    message = parse_message(data)
    if isinstance(message, ParseFailure):
        logger.debug(f"Ignoring datagram from {addr[0]}: {message.reason}")
        return False
    if not message.is_success or message.service_type != SERVICE_TYPE:
        logger.debug(f"Ignoring unrelated SSDP traffic from {addr[0]}: {message.start_line}")
        return False

    endpoint = None
    if message.location:
        endpoint = parse_location(message.location, STREAM_PORT)
    if endpoint is None:
        # Keep a responding peer even if it did not say where to connect
        endpoint = (addr[0], STREAM_PORT)

    address, port = endpoint
    is_new = registry.add(
        address,
        port,
        usn=message.headers.get("USN", ""),
        server=message.headers.get("SERVER", ""),
    )
    if is_new:
        logger.info(f"Discovered receiver: {address}:{port}")
    return True


async def discover(
    timeout: float = DISCOVERY_TIMEOUT,
    *,
    verify: bool = True,
    search_target: tuple[str, int] | None = None,
    max_responses: int = MAX_RESPONSES,
    cancel: CancelToken | None = None,
) -> list[DeviceRecord]:
    """
    Run one discovery pass and return the receivers found.

    Never raises for network problems: an empty list means nobody answered.
    """
    host, port = search_target or (SSDP_MULTICAST_GROUP, SSDP_PORT)
    logger.info(f"Scanning {host}:{port} for screen receivers...")

    try:
        sock = _open_search_socket()
    except OSError as e:
        logger.error(f"Could not open discovery socket: {e}")
        return []

    loop = asyncio.get_running_loop()
    try:
        transport, protocol = await loop.create_datagram_endpoint(DatagramInbox, sock=sock)
    except OSError as e:
        sock.close()
        logger.error(f"Could not start discovery endpoint: {e}")
        return []
    registry = Registry()
    responses = 0

    try:
        request = build_search_request(SERVICE_TYPE, SSDP_MULTICAST_GROUP, SSDP_PORT, SEARCH_MX)
        for attempt in range(SEARCH_REPEAT):
            try:
                transport.sendto(request, (host, port))
                logger.debug(f"M-SEARCH {attempt + 1}/{SEARCH_REPEAT} sent ({len(request)} bytes)")
            except OSError as e:
                logger.warning(f"Failed to send M-SEARCH: {e}")
            if attempt < SEARCH_REPEAT - 1:
                await asyncio.sleep(SEARCH_REPEAT_DELAY)

        deadline = loop.time() + timeout
        while responses < max_responses:
            if cancel is not None and cancel.cancelled:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                data, addr = await asyncio.wait_for(
                    protocol.datagrams.get(), min(remaining, 1.0)
                )
            except asyncio.TimeoutError:
                continue
            if _record_response(registry, data, addr):
                responses += 1
    finally:
        transport.close()

    devices = registry.snapshot()
    if verify and devices:
        checks = await asyncio.gather(*(is_reachable(d.address, d.port) for d in devices))
        for device, ok in zip(devices, checks):
            if not ok:
                logger.debug(f"Dropping unreachable receiver {device}")
        devices = [d for d, ok in zip(devices, checks) if ok]

    logger.info(f"Discovery complete: {len(devices)} receiver(s) found")
    return devices


async def has_receivers(timeout: float = DISCOVERY_TIMEOUT) -> bool:
    """Quick availability check."""
    return bool(await discover(timeout))


def format_device_list(devices: list[DeviceRecord]) -> str:
    """Numbered list for a selection prompt."""
    if not devices:
        return "No screen receivers found on the network.\n"
    lines = ["Discovered screen receivers:"]
    lines += [f"  [{index}] {device}" for index, device in enumerate(devices)]
    return "\n".join(lines) + "\n"


def select_device(devices: list[DeviceRecord], choice: str | int) -> DeviceRecord | None:
    """Resolve a numeric selection against the list; None if invalid."""
    try:
        index = int(choice)
    except (TypeError, ValueError):
        return None
    if 0 <= index < len(devices):
        return devices[index]
    return None
