"""
SSDP advertiser for a screen receiver.

Two duties share one CancelToken: the responder answers M-SEARCH queries
arriving on the multicast group with a unicast 200 OK, and the announcer
periodically multicasts a NOTIFY so passive listeners learn about us.
`advertise()` starts both and does not return until both have exited.
"""

import asyncio
import logging
import socket
import struct

from screenshare.cancellation import CancelToken
from screenshare.config import (
    ADVERTISE_HOST,
    ANNOUNCE_INTERVAL,
    INSTANCE_ID,
    POLL_INTERVAL,
    SERVER_ID,
    SERVICE_TYPE,
    SSDP_MULTICAST_GROUP,
    SSDP_MULTICAST_TTL,
    SSDP_PORT,
    STREAM_PORT,
)
from screenshare.discovery.client import DatagramInbox
from screenshare.discovery.ssdp import (
    NTS_ALIVE,
    NTS_BYEBYE,
    SSDP_ALL,
    ParseFailure,
    build_notify,
    build_search_response,
    make_location,
    make_usn,
    parse_message,
)

logger = logging.getLogger(__name__)


class AnnouncerProtocol(asyncio.DatagramProtocol):
    """Send-only endpoint; surfaces asynchronous send errors."""

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Announcement send failed: {exc}")


def resolve_advertise_host(group: str = SSDP_MULTICAST_GROUP, port: int = SSDP_PORT) -> str:
    """Best guess at the address other LAN hosts can reach us on."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            # No packet is sent; connect() only selects the outbound interface
            probe.connect((group, port))
            address = probe.getsockname()[0]
            if address and address != "0.0.0.0":
                return address
        except OSError as e:
            logger.debug(f"Outbound interface probe failed: {e}")
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class DiscoveryService:
    """Makes a screen receiver discoverable on the LAN."""

    def __init__(
        self,
        stream_port: int = STREAM_PORT,
        *,
        advertise_host: str | None = ADVERTISE_HOST,
        group: str = SSDP_MULTICAST_GROUP,
        port: int = SSDP_PORT,
        bind_host: str = "0.0.0.0",
        announce_interval: float = ANNOUNCE_INTERVAL,
        instance_id: str = INSTANCE_ID,
    ) -> None:
        self._stream_port = stream_port
        self._advertise_host = advertise_host or resolve_advertise_host(group, port)
        self._group = group
        self._port = port
        self._bind_host = bind_host
        self._announce_interval = announce_interval
        self._usn = make_usn(instance_id, SERVICE_TYPE)
        self._address: tuple[str, int] | None = None

        self.ready = asyncio.Event()
        self.searches_answered = 0
        self.announcements_sent = 0

    @property
    def location(self) -> str:
        return make_location(self._advertise_host, self._stream_port)

    @property
    def usn(self) -> str:
        return self._usn

    @property
    def address(self) -> tuple[str, int] | None:
        """Bound responder address, available once `ready` is set."""
        return self._address

    @property
    def stream_port(self) -> int:
        return self._stream_port

    @stream_port.setter
    def stream_port(self, port: int) -> None:
        self._stream_port = port

    @property
    def stats(self) -> dict:
        return {
            "searches_answered": self.searches_answered,
            "announcements_sent": self.announcements_sent,
        }

    def search_response(self) -> bytes:
        return build_search_response(
            self.location, SERVICE_TYPE, self._usn, SERVER_ID, int(self._announce_interval)
        )

    def _notify(self, nts: str) -> bytes:
        return build_notify(
            self.location,
            SERVICE_TYPE,
            self._usn,
            SERVER_ID,
            int(self._announce_interval),
            self._group,
            self._port,
            nts=nts,
        )

    def _open_responder_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            # Other SSDP stacks on this host usually hold 1900 as well
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.bind((self._bind_host, self._port))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise

        membership = struct.pack(
            "4s4s", socket.inet_aton(self._group), socket.inet_aton("0.0.0.0")
        )
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        except OSError as e:
            # Still answers searches sent straight to this host
            logger.warning(f"Could not join multicast group {self._group}: {e}")
        return sock

    def _open_announcer_socket(self) -> socket.socket:
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

    async def advertise(self, cancel: CancelToken) -> None:
        """
        Answer searches and announce until `cancel` fires.

        Raises OSError if either socket cannot be set up.
        """
        loop = asyncio.get_running_loop()
        try:
            responder_sock = self._open_responder_socket()
        except OSError as e:
            logger.error(f"Discovery responder could not bind UDP port {self._port}: {e}")
            raise
        try:
            announcer_sock = self._open_announcer_socket()
        except OSError as e:
            responder_sock.close()
            logger.error(f"Discovery announcer socket failed: {e}")
            raise

        self._address = responder_sock.getsockname()[:2]
        try:
            responder, inbox = await loop.create_datagram_endpoint(
                DatagramInbox, sock=responder_sock
            )
        except Exception:
            responder_sock.close()
            announcer_sock.close()
            raise
        try:
            announcer, _ = await loop.create_datagram_endpoint(
                AnnouncerProtocol, sock=announcer_sock
            )
        except Exception:
            responder.close()
            announcer_sock.close()
            raise

        stop = cancel.child()
        tasks = [
            asyncio.create_task(self._respond_loop(responder, inbox, stop)),
            asyncio.create_task(self._announce_loop(announcer, stop)),
        ]
        self.ready.set()
        logger.info(f"Advertising {SERVICE_TYPE} at {self.location} (UDP port {self._address[1]})")

        try:
            await asyncio.gather(*tasks)
        finally:
            # If one duty failed, the other must still be stopped and joined
            stop.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            responder.close()
            announcer.close()
            self.ready.clear()
            logger.info("Discovery service stopped")

    async def _respond_loop(
        self, transport: asyncio.DatagramTransport, inbox: DatagramInbox, stop: CancelToken
    ) -> None:
        """Answer matching M-SEARCH requests with a unicast 200 OK."""
        while not stop.cancelled:
            try:
                data, addr = await asyncio.wait_for(inbox.datagrams.get(), POLL_INTERVAL)
            except asyncio.TimeoutError:
                continue

            message = parse_message(data)
            if isinstance(message, ParseFailure):
                logger.debug(f"Ignoring datagram from {addr[0]}: {message.reason}")
                continue
            if not message.is_search:
                continue
            if message.service_type not in (SERVICE_TYPE, SSDP_ALL):
                logger.debug(f"Ignoring search for {message.service_type} from {addr[0]}")
                continue

            transport.sendto(self.search_response(), addr)
            self.searches_answered += 1
            logger.debug(f"Answered M-SEARCH from {addr[0]}:{addr[1]}")

    async def _announce_loop(self, transport: asyncio.DatagramTransport, stop: CancelToken) -> None:
        """Multicast ssdp:alive every announce interval; ssdp:byebye on the way out."""
        target = (self._group, self._address[1] if self._address else self._port)
        alive = self._notify(NTS_ALIVE)

        while not stop.cancelled:
            try:
                transport.sendto(alive, target)
                self.announcements_sent += 1
            except OSError as e:
                logger.warning(f"Announcement send failed: {e}")
            if await stop.wait(self._announce_interval):
                break

        try:
            transport.sendto(self._notify(NTS_BYEBYE), target)
        except OSError as e:
            logger.debug(f"byebye not sent: {e}")
