"""Automatic port forwarding through UPnP Internet Gateway Devices.

Discovers the local router via SSDP, maps the ports an application asks
for and reports the outcome of every mapping attempt.
"""

from upnpfwd.exceptions import UPnPError, UPnPFwdError
from upnpfwd.forwarder import (
    DetectedIP,
    DetectedIPStatus,
    ForwardPort,
    ForwardPortStatus,
    PortStatusCode,
    UPnPForwarder,
)

__version__ = "0.1.0"

__all__ = [
    "DetectedIP",
    "DetectedIPStatus",
    "ForwardPort",
    "ForwardPortStatus",
    "PortStatusCode",
    "UPnPError",
    "UPnPFwdError",
    "UPnPForwarder",
]
