"""Port forwarding agent driving a UPnP Internet Gateway Device."""

from upnpfwd.forwarder.agent import UPnPForwarder
from upnpfwd.forwarder.binding import BindingState
from upnpfwd.forwarder.ports import (
    PROTOCOL_TCP_IPV4,
    PROTOCOL_UDP_IPV4,
    DetectedIP,
    DetectedIPStatus,
    ForwardPort,
    ForwardPortCallback,
    ForwardPortStatus,
    PortStatusCode,
)

__all__ = [
    "PROTOCOL_TCP_IPV4",
    "PROTOCOL_UDP_IPV4",
    "BindingState",
    "DetectedIP",
    "DetectedIPStatus",
    "ForwardPort",
    "ForwardPortCallback",
    "ForwardPortStatus",
    "PortStatusCode",
    "UPnPForwarder",
]
