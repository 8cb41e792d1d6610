"""Forward port requests, their outcomes and detected addresses."""

from __future__ import annotations

import ipaddress
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

PROTOCOL_TCP_IPV4 = 6
PROTOCOL_UDP_IPV4 = 17

# Protocol number → UPnP NewProtocol value
UPNP_PROTOCOLS = {
    PROTOCOL_TCP_IPV4: "TCP",
    PROTOCOL_UDP_IPV4: "UDP",
}


@dataclass(frozen=True)
class ForwardPort:
    """A port the application wants reachable from the Internet.

    Binding to a specific internal interface is not supported: an IGD
    normally sits on a single LAN.
    """

    name: str
    is_ip6: bool
    protocol: int
    internal_port: int
    external_port: int

    def __post_init__(self) -> None:
        for field_name in ("internal_port", "external_port"):
            port = getattr(self, field_name)
            if not 1 <= port <= 65535:
                msg = f"{field_name} must be in 1..65535, got {port}"
                raise ValueError(msg)

    def compare_to(self, other: ForwardPort) -> int:
        """Order by name; equal ports compare as 0."""
        if self == other:
            return 0
        if self.name < other.name:
            return -1
        if self.name > other.name:
            return 1
        return 0

    def __lt__(self, other: ForwardPort) -> bool:
        if not isinstance(other, ForwardPort):
            return NotImplemented
        return self.compare_to(other) < 0

    def __gt__(self, other: ForwardPort) -> bool:
        if not isinstance(other, ForwardPort):
            return NotImplemented
        return self.compare_to(other) > 0

    @property
    def upnp_protocol(self) -> str | None:
        """``"TCP"``/``"UDP"``, or None if the router cannot map this port."""
        if self.is_ip6:
            return None
        return UPNP_PROTOCOLS.get(self.protocol)


class PortStatusCode(str, Enum):
    """Outcome of one forwarding attempt.

    UPnP cannot confirm that the router applied a mapping, so there is no
    definite success.
    """

    DEFINITE_FAILURE = "definite_failure"
    PROBABLE_FAILURE = "probable_failure"
    MAYBE_SUCCESS = "maybe_success"


@dataclass(frozen=True)
class ForwardPortStatus:
    code: PortStatusCode
    reason: str
    external_port: int


class DetectedIPStatus(str, Enum):
    """Reachability opinion attached to a detected address."""

    NOT_SUPPORTED = "not_supported"
    FULL_INTERNET = "full_internet"


@dataclass(frozen=True)
class DetectedIP:
    address: ipaddress.IPv4Address | ipaddress.IPv6Address
    status: DetectedIPStatus


class ForwardPortCallback(Protocol):
    """Application sink for forwarding outcomes.

    Called with a single-entry mapping per port. May be a coroutine.
    """

    def port_forward_status(
        self, statuses: Mapping[ForwardPort, ForwardPortStatus]
    ) -> None | Awaitable[None]: ...
