"""UPnP device, service and action objects."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

from upnpfwd.exceptions import SOAPError, UPnPError
from upnpfwd.upnp.soap import DEFAULT_SOAP_TIMEOUT, send_soap_action

logger = logging.getLogger(__name__)


class Action:
    """A single invocation of a service action.

    Input arguments keep the order in which they were set; that order is the
    order they travel in on the SOAP wire.
    """

    def __init__(self, service: Service, name: str):
        self.service = service
        self.name = name
        self.arguments: dict[str, str] = {}
        self.output_arguments: dict[str, str] = {}
        self.error_code: str | None = None
        self.error_description: str | None = None

    def set_argument_value(self, name: str, value: str | int) -> None:
        """Set an input argument; integers are sent as decimal text."""
        self.arguments[name] = str(value)

    def get_argument_value(self, name: str) -> str | None:
        """Return an output argument of the last successful invocation."""
        return self.output_arguments.get(name)

    async def post_control_action(self) -> bool:
        """Invoke the action on the service's control URL.

        Returns:
            True if the router answered without a fault, False otherwise

        """
        self.output_arguments = {}
        self.error_code = None
        self.error_description = None
        try:
            self.output_arguments = await send_soap_action(
                self.service.control_url,
                self.name,
                self.service.service_type,
                self.arguments,
                timeout=self.service.timeout,
            )
        except SOAPError as e:
            self.error_code = e.error_code
            self.error_description = e.message
            logger.debug("%s failed: %s", self.name, e)
            return False
        except UPnPError as e:
            self.error_description = e.message
            logger.debug("%s failed: %s", self.name, e)
            return False
        return True

    def __repr__(self) -> str:
        return f"Action({self.name!r}, {self.arguments!r})"


class Service:
    """A service offered by a UPnP device."""

    def __init__(
        self,
        service_type: str,
        control_url: str,
        service_id: str = "",
        scpd_url: str = "",
        event_sub_url: str = "",
        device: Device | None = None,
        action_names: set[str] | None = None,
        timeout: float = DEFAULT_SOAP_TIMEOUT,
    ):
        self.service_type = service_type
        self.service_id = service_id
        self.control_url = control_url
        self.scpd_url = scpd_url
        self.event_sub_url = event_sub_url
        self.device = device
        # None when the SCPD could not be loaded
        self.action_names = action_names
        self.timeout = timeout

    def get_action(self, name: str) -> Action | None:
        """Return a fresh invocation of action ``name`` or None if unsupported."""
        if self.action_names is not None and name not in self.action_names:
            return None
        return Action(self, name)

    def __repr__(self) -> str:
        return f"Service({self.service_type!r}, {self.control_url!r})"


class Device:
    """A UPnP device, possibly embedded in another device."""

    def __init__(
        self,
        device_type: str,
        udn: str = "",
        friendly_name: str = "",
        location: str = "",
        interface_address: str = "",
        parent: Device | None = None,
    ):
        self.device_type = device_type
        self.udn = udn
        self.friendly_name = friendly_name
        self.location = location
        self.interface_address = interface_address
        self.parent = parent
        self.devices: list[Device] = []
        self.services: list[Service] = []

    @property
    def is_root_device(self) -> bool:
        return self.parent is None

    @property
    def root_device(self) -> Device:
        device = self
        while device.parent is not None:
            device = device.parent
        return device

    @property
    def http_port(self) -> int:
        """Port of the HTTP server hosting the device description."""
        parsed = urlparse(self.location)
        if parsed.port is not None:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80

    @property
    def host(self) -> str:
        return urlparse(self.location).hostname or ""

    def add_device(self, device: Device) -> Device:
        device.parent = self
        self.devices.append(device)
        return device

    def add_service(self, service: Service) -> Service:
        service.device = self
        self.services.append(service)
        return service

    def get_service(self, service_type: str) -> Service | None:
        """Return the first service of ``service_type`` or None."""
        for service in self.services:
            if service.service_type == service_type:
                return service
        return None

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Device):
            return NotImplemented
        return bool(self.udn) and self.udn == other.udn

    def __hash__(self) -> int:
        return hash(self.udn) if self.udn else id(self)

    def __repr__(self) -> str:
        return (
            f"Device({self.device_type!r}, udn={self.udn!r}, "
            f"friendly_name={self.friendly_name!r})"
        )
