"""UPnP control point transport: SSDP discovery, descriptions and SOAP control."""

from upnpfwd.upnp.control_point import ControlPoint, DeviceChangeListener
from upnpfwd.upnp.device import Action, Device, Service

__all__ = ["Action", "ControlPoint", "Device", "DeviceChangeListener", "Service"]
