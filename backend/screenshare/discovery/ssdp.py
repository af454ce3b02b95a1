"""
SSDP message building and parsing.

Discovery traffic is plain HTTP-over-UDP: a start line, CRLF separated
headers, and a blank line. Parsing never raises; malformed input comes
back as a ParseFailure so that unrelated multicast chatter on the group
is just another data case.
"""

import re
from email.utils import formatdate
from urllib.parse import urlsplit

from pydantic import BaseModel

SEARCH_START_LINE = "M-SEARCH * HTTP/1.1"
NOTIFY_START_LINE = "NOTIFY * HTTP/1.1"
OK_START_LINE = "HTTP/1.1 200 OK"
SSDP_ALL = "ssdp:all"
NTS_ALIVE = "ssdp:alive"
NTS_BYEBYE = "ssdp:byebye"

_MAX_AGE_RE = re.compile(r"max-age\s*=\s*(\d+)", re.IGNORECASE)


class SsdpMessage(BaseModel):
    """A parsed discovery datagram. Header names are upper-cased."""
    start_line: str
    headers: dict[str, str]

    @property
    def is_search(self) -> bool:
        return self.start_line.upper().startswith("M-SEARCH ")

    @property
    def is_notify(self) -> bool:
        return self.start_line.upper().startswith("NOTIFY ")

    @property
    def is_success(self) -> bool:
        parts = self.start_line.split(None, 2)
        return len(parts) >= 2 and parts[0].upper().startswith("HTTP/1.") and parts[1] == "200"

    @property
    def service_type(self) -> str | None:
        return self.headers.get("ST") or self.headers.get("NT")

    @property
    def location(self) -> str | None:
        return self.headers.get("LOCATION")

    @property
    def max_age(self) -> int | None:
        match = _MAX_AGE_RE.search(self.headers.get("CACHE-CONTROL", ""))
        return int(match.group(1)) if match else None


class ParseFailure(BaseModel):
    """Why a datagram could not be read as an SSDP message."""
    reason: str


def _render(start_line: str, headers: list[tuple[str, str]]) -> bytes:
    lines = [start_line] + [f"{name}: {value}" for name, value in headers]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("ascii")


def make_usn(instance_id: str, service_type: str) -> str:
    return f"uuid:{instance_id}::{service_type}"


def make_location(host: str, port: int) -> str:
    return f"http://{host}:{port}/"


def build_search_request(service_type: str, host: str, port: int, mx: int) -> bytes:
    """M-SEARCH asking any listener of `service_type` to respond."""
    return _render(SEARCH_START_LINE, [
        ("HOST", f"{host}:{port}"),
        ("MAN", '"ssdp:discover"'),
        ("MX", str(mx)),
        ("ST", service_type),
    ])


def build_search_response(
    location: str, service_type: str, usn: str, server: str, max_age: int
) -> bytes:
    """Unicast 200 OK answering an M-SEARCH."""
    return _render(OK_START_LINE, [
        ("CACHE-CONTROL", f"max-age={max_age}"),
        ("DATE", formatdate(usegmt=True)),
        ("EXT", ""),
        ("LOCATION", location),
        ("SERVER", server),
        ("ST", service_type),
        ("USN", usn),
    ])


def build_notify(
    location: str,
    service_type: str,
    usn: str,
    server: str,
    max_age: int,
    host: str,
    port: int,
    nts: str = NTS_ALIVE,
) -> bytes:
    """Unsolicited multicast announcement (alive or byebye)."""
    headers = [("HOST", f"{host}:{port}")]
    if nts == NTS_ALIVE:
        headers += [
            ("CACHE-CONTROL", f"max-age={max_age}"),
            ("LOCATION", location),
            ("SERVER", server),
        ]
    headers += [("NT", service_type), ("NTS", nts), ("USN", usn)]
    return _render(NOTIFY_START_LINE, headers)


def parse_message(data: bytes) -> SsdpMessage | ParseFailure:
    """Split a datagram into start line and header map."""
    if not data:
        return ParseFailure(reason="empty datagram")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return ParseFailure(reason="not UTF-8 text")

    lines = text.replace("\r\n", "\n").split("\n")
    start_line = lines[0].strip()
    if not start_line or "HTTP/" not in start_line.upper():
        return ParseFailure(reason=f"not an HTTP-style start line: {start_line[:40]!r}")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line.strip():
            break
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            return ParseFailure(reason=f"malformed header line: {line[:40]!r}")
        headers[name.strip().upper()] = value.strip()

    if not headers:
        return ParseFailure(reason="no headers")
    return SsdpMessage(start_line=start_line, headers=headers)


def parse_location(value: str, default_port: int) -> tuple[str, int] | None:
    """
    Extract (host, port) from a LOCATION URL such as http://10.0.0.5:9100/.

    Returns None when the URL carries no usable host.
    """
    value = value.strip()
    if "://" not in value:
        value = "http://" + value
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None
    if not parts.hostname:
        return None
    return parts.hostname, port or default_port
