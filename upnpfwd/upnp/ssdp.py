"""SSDP (Simple Service Discovery Protocol) helpers."""

from __future__ import annotations

import asyncio
import logging
import re
import socket
from collections.abc import Callable

logger = logging.getLogger(__name__)

SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_MULTICAST_TTL = 2

ROOT_DEVICE_TARGET = "upnp:rootdevice"
NTS_ALIVE = "ssdp:alive"
NTS_BYEBYE = "ssdp:byebye"

_MAX_AGE_RE = re.compile(r"max-age\s*=\s*(\d+)", re.IGNORECASE)

DatagramHandler = Callable[[bytes, tuple[str, int]], None]


def build_msearch_request(search_target: str, mx: int = 3) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1).

    Args:
        search_target: ST (Search Target) header value
        mx: Maximum number of seconds a device may wait before answering

    Returns:
        M-SEARCH request bytes

    """
    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_message(data: bytes) -> tuple[str, dict[str, str]]:
    """Split an SSDP datagram into its start line and lower-cased headers."""
    lines = data.decode("utf-8", errors="ignore").split("\r\n")
    start_line = lines[0].strip() if lines else ""
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return start_line, headers


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers.

    Args:
        response: SSDP response bytes

    Returns:
        Dictionary of header fields

    """
    return parse_ssdp_message(response)[1]


def udn_from_usn(usn: str) -> str:
    """Extract the device UDN (``uuid:...``) from a USN header."""
    return usn.split("::", 1)[0].strip()


def max_age_from_cache_control(value: str | None, default: int) -> int:
    """Read ``max-age`` from a CACHE-CONTROL header."""
    if not value:
        return default
    match = _MAX_AGE_RE.search(value)
    if match is None:
        return default
    return int(match.group(1))


def local_address_for(host: str, port: int = SSDP_MULTICAST_PORT) -> str:
    """Return the local IPv4 address this host uses to reach ``host``.

    No packet is sent; connecting a UDP socket only selects a route.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((host, port))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine local address towards %s: %s", host, e)
        return ""
    finally:
        sock.close()


def create_search_socket() -> socket.socket:
    """Create the unicast socket M-SEARCH requests are sent from."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, SSDP_MULTICAST_TTL)
    sock.bind(("0.0.0.0", 0))  # nosec B104 - SSDP replies arrive on any interface
    sock.setblocking(False)
    return sock


def create_notify_socket() -> socket.socket:
    """Create a socket joined to the SSDP multicast group on port 1900."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            logger.debug("SO_REUSEPORT not supported")
    try:
        sock.bind(("", SSDP_MULTICAST_PORT))
        mreq = socket.inet_aton(SSDP_MULTICAST_IP) + socket.inet_aton("0.0.0.0")  # nosec B104
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class SSDPProtocol(asyncio.DatagramProtocol):
    """Datagram protocol forwarding every SSDP datagram to a handler."""

    def __init__(self, handler: DatagramHandler):
        self.handler = handler
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.handler(data, (addr[0], addr[1]))

    def error_received(self, exc: Exception) -> None:
        logger.debug("SSDP socket error: %s", exc)
