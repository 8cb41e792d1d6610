"""The selected Internet Gateway Device and its connection service."""

from __future__ import annotations

import logging
from enum import Enum

from upnpfwd.models import IGD_DEVICE_TYPE
from upnpfwd.upnp.device import Device, Service

logger = logging.getLogger(__name__)

ROUTER_DEVICE = IGD_DEVICE_TYPE
WAN_DEVICE = "urn:schemas-upnp-org:device:WANDevice:1"
WANCON_DEVICE = "urn:schemas-upnp-org:device:WANConnectionDevice:1"
WAN_IP_CONNECTION = "urn:schemas-upnp-org:service:WANIPConnection:1"
WAN_PPP_CONNECTION = "urn:schemas-upnp-org:service:WANPPPConnection:1"


class BindingState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    DISABLED = "disabled"


def is_internet_gateway(device: Device) -> bool:
    return device.device_type == ROUTER_DEVICE and device.is_root_device


def discover_service(router: Device) -> Service | None:
    """Find the port mapping service of an IGD.

    Only the first WANConnectionDevice of the first WANDevice is considered.
    WANPPPConnection is preferred over WANIPConnection.
    """
    wan_device = next(
        (d for d in router.devices if d.device_type == WAN_DEVICE), None
    )
    if wan_device is None:
        logger.debug("%s has no %s", router.friendly_name, WAN_DEVICE)
        return None

    connection_device = next(
        (d for d in wan_device.devices if d.device_type == WANCON_DEVICE), None
    )
    if connection_device is None:
        logger.debug("%s has no %s", router.friendly_name, WANCON_DEVICE)
        return None

    service = connection_device.get_service(WAN_PPP_CONNECTION)
    if service is not None:
        return service

    logger.debug(
        "%s doesn't seem to be using PPP; we won't be able to extract "
        "bandwidth-related information out of it.",
        router.friendly_name,
    )
    service = connection_device.get_service(WAN_IP_CONNECTION)
    if service is None:
        logger.debug(
            "%s doesn't export %s either: we won't be able to use it!",
            router.friendly_name,
            WAN_IP_CONNECTION,
        )
        return None

    logger.debug("SCPD URL: %s", service.scpd_url)
    return service


class IGDBinding:
    """Router/service pair currently in use.

    Not synchronized: the owning agent guards it with its lock.
    """

    def __init__(self) -> None:
        self.router: Device | None = None
        self.service: Service | None = None
        self.disabled = False

    @property
    def state(self) -> BindingState:
        if self.disabled:
            return BindingState.DISABLED
        if self.router is not None and self.service is not None:
            return BindingState.BOUND
        return BindingState.UNBOUND

    @property
    def is_nat_present(self) -> bool:
        return self.state is BindingState.BOUND

    def bind(self, router: Device, service: Service) -> None:
        if self.disabled:
            return
        self.router = router
        self.service = service

    def clear(self) -> None:
        self.router = None
        self.service = None

    def disable(self) -> None:
        """Clear the binding for good."""
        self.clear()
        self.disabled = True

    def control(self) -> IGDControl | None:
        """Snapshot the binding for use outside the agent lock."""
        if self.disabled or self.router is None or self.service is None:
            return None
        return IGDControl(self.router, self.service)


class IGDControl:
    """Control actions on a bound connection service.

    Every call waits for the SOAP response; nothing is queued.
    """

    def __init__(self, router: Device, service: Service):
        self.router = router
        self.service = service

    async def get_external_address(self) -> str | None:
        """The external address the NAT thinks we have, or None."""
        action = self.service.get_action("GetExternalIPAddress")
        if action is None or not await action.post_control_action():
            return None
        return action.get_argument_value("NewExternalIPAddress")

    async def get_link_layer_max_bit_rates(self) -> tuple[str, str] | None:
        """(upstream, downstream) bit rates as reported, or None."""
        action = self.service.get_action("GetLinkLayerMaxBitRates")
        if action is None or not await action.post_control_action():
            return None
        return (
            action.get_argument_value("NewUpstreamMaxBitRate") or "",
            action.get_argument_value("NewDownstreamMaxBitRate") or "",
        )

    async def add_port_mapping(
        self, protocol: str, internal: int, external: int, description: str
    ) -> bool:
        action = self.service.get_action("AddPortMapping")
        if action is None:
            logger.debug("Couldn't find AddPortMapping action!")
            return False

        action.set_argument_value("NewRemoteHost", "")
        action.set_argument_value("NewExternalPort", external)
        action.set_argument_value("NewInternalClient", self.router.interface_address)
        action.set_argument_value("NewInternalPort", internal)
        action.set_argument_value("NewProtocol", protocol)
        action.set_argument_value("NewPortMappingDescription", description)
        action.set_argument_value("NewEnabled", "1")
        action.set_argument_value("NewLeaseDuration", 0)

        if await action.post_control_action():
            return True
        logger.debug(
            "AddPortMapping %s %d -> %d rejected: %s",
            protocol,
            external,
            internal,
            action.error_description,
        )
        return False

    async def delete_port_mapping(self, protocol: str, external: int) -> bool:
        action = self.service.get_action("DeletePortMapping")
        if action is None:
            logger.debug("Couldn't find DeletePortMapping action!")
            return False

        action.set_argument_value("NewExternalPort", external)
        action.set_argument_value("NewProtocol", protocol)
        return await action.post_control_action()
