"""Automatic port forwarding through a UPnP Internet Gateway Device."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import ipaddress
import logging
from collections.abc import Iterable

from upnpfwd.forwarder.binding import (
    BindingState,
    IGDBinding,
    IGDControl,
    discover_service,
    is_internet_gateway,
)
from upnpfwd.forwarder.ports import (
    DetectedIP,
    DetectedIPStatus,
    ForwardPort,
    ForwardPortCallback,
    ForwardPortStatus,
    PortStatusCode,
)
from upnpfwd.logging_config import set_correlation_id
from upnpfwd.models import Config
from upnpfwd.upnp.control_point import ControlPoint
from upnpfwd.upnp.device import Device

logger = logging.getLogger(__name__)

REASON_NOT_SUPPORTED = "Protocol not supported"
REASON_FORWARDED = "Port apparently forwarded by UPnP"
REASON_FAILED = "UPnP port forwarding apparently failed"


class UPnPForwarder:
    """Keeps the router's port mappings in line with a desired set of ports.

    The application declares the ports it wants reachable with
    :meth:`on_change_public_ports`. Once the control point reports a single
    Internet Gateway Device, the agent maps the missing ports, unmaps the
    ones no longer wanted and reports every new mapping attempt through the
    application's callback. Finding more than one IGD disables the agent.

    Shared state is only touched while holding ``lock``; SOAP actions, retry
    sleeps and callbacks always run with the lock released.
    """

    def __init__(
        self,
        config: Config | None = None,
        control_point: ControlPoint | None = None,
    ) -> None:
        """Initialize the forwarder.

        Args:
            config: Configuration; defaults are used when None
            control_point: Transport to listen to; one is created from
                ``config.discovery`` when None

        """
        self.config = config or Config()
        self.control_point = control_point or ControlPoint(self.config.discovery)
        self.control_point.add_device_change_listener(self)

        self.lock = asyncio.Lock()
        self.binding = IGDBinding()
        self._terminated = False
        # Set from get_address(), never cleared
        self._double_natted = False

        # Ports we want to forward
        self._ports_to_forward: frozenset[ForwardPort] | None = None
        # Ports we have actually forwarded
        self._ports_forwarded: set[ForwardPort] = set()
        self._forward_callback: ForwardPortCallback | None = None

        self._bound = asyncio.Event()
        self._interrupt = asyncio.Event()

    async def __aenter__(self) -> UPnPForwarder:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.terminate()

    @property
    def state(self) -> BindingState:
        return self.binding.state

    @property
    def is_nat_present(self) -> bool:
        """Whether we are behind a usable UPnP-enabled NAT router."""
        return self.binding.is_nat_present

    @property
    def thinks_double_natted(self) -> bool:
        return self._double_natted

    @property
    def forwarded_ports(self) -> frozenset[ForwardPort]:
        return frozenset(self._ports_forwarded)

    @property
    def desired_ports(self) -> frozenset[ForwardPort]:
        return self._ports_to_forward or frozenset()

    def _is_inert(self) -> bool:
        return self.binding.disabled or self._terminated

    async def start(self) -> None:
        """Start discovering the router."""
        await self.control_point.start()
        await self.control_point.search()

    async def terminate(self) -> None:
        """Remove our mappings and stop discovery. The agent stays unusable."""
        if self._terminated:
            return
        await self.unregister_port_mappings()
        async with self.lock:
            self._terminated = True
        self._interrupt.set()
        await self.control_point.stop()
        self.control_point.remove_device_change_listener(self)
        logger.debug("UPnP forwarder terminated")

    async def wait_until_bound(self, timeout: float | None = None) -> bool:
        """Wait for a usable router; False on timeout or if disabled meanwhile."""
        try:
            await asyncio.wait_for(self._bound.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_nat_present

    # Device change events

    async def device_added(self, device: Device) -> None:
        async with self.lock:
            if self._is_inert():
                logger.debug("Plugin has been disabled previously, ignoring new device.")
                return

        if not is_internet_gateway(device):
            return

        ports: frozenset[ForwardPort] | None = None
        async with self.lock:
            if self._is_inert():
                return
            if self.binding.state is BindingState.BOUND:
                logger.info(
                    "Found more than one IGD on the network; "
                    "UPnP port forwarding will be disabled"
                )
                self.binding.disable()
                self._interrupt.set()
                self._bound.set()
            else:
                logger.debug(
                    "UPnP IGD found: %s %s %s",
                    device.friendly_name,
                    device.location,
                    device.http_port,
                )
                service = discover_service(device)
                if service is None:
                    logger.info(
                        "The IGD %s does not offer a usable connection service; "
                        "UPnP port forwarding will be disabled",
                        device.friendly_name,
                    )
                    self.binding.disable()
                    self._interrupt.set()
                    self._bound.set()
                else:
                    self.binding.bind(device, service)
                    self._bound.set()
                    ports = self._ports_to_forward

        # We only ever need one IGD
        await self.control_point.stop()

        if ports:
            await self._register_ports(ports)

    async def device_removed(self, device: Device) -> None:
        async with self.lock:
            if self.binding.router is None or self.binding.router != device:
                return
            logger.info("UPnP IGD %s is gone", device.friendly_name)
            self.binding.clear()
            self._bound.clear()

    # Reconciliation

    async def on_change_public_ports(
        self,
        ports: Iterable[ForwardPort] | None,
        callback: ForwardPortCallback | None,
    ) -> None:
        """Declare the ports that should be forwarded from now on.

        Ports added since the previous call are mapped and reported through
        ``callback``; ports dropped since then are unmapped silently. Without a
        router the set is only recorded and is mapped once one appears.
        """
        new_ports = frozenset(ports or ())
        to_dump: frozenset[ForwardPort] = frozenset()
        to_forward: frozenset[ForwardPort] = frozenset()
        set_correlation_id()
        logger.info("UPnP forwarding %d ports...", len(new_ports))

        async with self.lock:
            if (
                self._forward_callback is not None
                and callback is not None
                and self._forward_callback is not callback
            ):
                logger.debug(
                    "ForwardPortCallback changed from %r to %r - using new value, "
                    "but this is very strange!",
                    self._forward_callback,
                    callback,
                )
            self._forward_callback = callback

            previous = self._ports_to_forward
            if not previous:
                to_forward = new_ports
            elif not new_ports:
                to_dump = previous
            else:
                to_forward = new_ports - previous
                to_dump = previous - new_ports
            self._ports_to_forward = new_ports

            if self._is_inert():
                logger.debug("Plugin has been disabled previously, ignoring request.")
                return
            if self.binding.state is not BindingState.BOUND:
                logger.info("No usable IGD yet; ports will be forwarded once one is found")
                return

        if to_dump:
            await self._unregister_ports(to_dump)
        if to_forward:
            await self._register_ports(to_forward)

    async def unregister_port_mappings(self) -> None:
        """Remove every mapping we installed."""
        async with self.lock:
            ports = frozenset(self._ports_forwarded)
        await self._unregister_ports(ports)

    async def _register_ports(self, ports: Iterable[ForwardPort]) -> None:
        ports = sorted(ports)
        logger.debug("registerPorts - %d", len(ports))
        for port in ports:
            if self._is_inert():
                return
            if not await self._wants(port):
                # Dropped by a later on_change_public_ports()
                continue
            protocol = port.upnp_protocol
            if protocol is None:
                status = ForwardPortStatus(
                    PortStatusCode.DEFINITE_FAILURE,
                    REASON_NOT_SUPPORTED,
                    port.external_port,
                )
            elif await self.try_add_mapping(
                protocol, port.internal_port, port.external_port, port.name, port
            ):
                status = ForwardPortStatus(
                    PortStatusCode.MAYBE_SUCCESS,
                    REASON_FORWARDED,
                    port.external_port,
                )
            else:
                status = ForwardPortStatus(
                    PortStatusCode.PROBABLE_FAILURE,
                    REASON_FAILED,
                    port.external_port,
                )
            if self._is_inert():
                return
            if await self._wants(port):
                await self._report(port, status)

    async def _wants(self, port: ForwardPort) -> bool:
        async with self.lock:
            return not self._is_inert() and port in self.desired_ports

    async def _unregister_ports(self, ports: Iterable[ForwardPort]) -> None:
        for port in sorted(ports):
            protocol = port.upnp_protocol
            if protocol is None:
                # Already reported when it was registered
                continue
            await self._remove_mapping(
                protocol, port.internal_port, port.external_port, port, quiet=False
            )

    async def _report(self, port: ForwardPort, status: ForwardPortStatus) -> None:
        async with self.lock:
            callback = self._forward_callback
        if callback is None:
            logger.debug("No callback for %s: %s", port.name, status.code.value)
            return
        try:
            result = callback.port_forward_status({port: status})
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Forward port callback failed for %s", port.name)

    async def try_add_mapping(
        self,
        protocol: str,
        internal: int,
        external: int,
        name: str,
        port: ForwardPort,
    ) -> bool:
        """Add a mapping, retrying on failure.

        Returns:
            True as soon as one attempt succeeds

        """
        logger.info(
            "UPnP: Registering a port mapping for %d -> %d %s",
            internal,
            external,
            protocol,
        )
        attempts = self.config.forwarder.mapping_attempts
        description = self.config.forwarder.description_prefix + name
        forwarded = False
        tries = 0
        while tries < attempts:
            tries += 1
            forwarded = await self._add_mapping(
                protocol, internal, external, description, port
            )
            if forwarded or tries == attempts:
                break
            if not await self._wants(port):
                logger.debug("UPnP: Giving up on %s, no longer wanted", name)
                break
            await self._sleep(self.config.forwarder.mapping_retry_interval)

        logger.info(
            "UPnP: %s (%d tries)",
            "Mapping is successful!" if forwarded else "Mapping has failed!",
            tries,
        )
        return forwarded

    async def _sleep(self, delay: float) -> None:
        # Cut short once the agent is disabled or terminated
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._interrupt.wait(), timeout=delay)

    async def _control(self) -> IGDControl | None:
        async with self.lock:
            if self._is_inert():
                return None
            return self.binding.control()

    async def _add_mapping(
        self,
        protocol: str,
        internal: int,
        external: int,
        description: str,
        port: ForwardPort,
    ) -> bool:
        control = await self._control()
        if control is None:
            return False

        # Clear whatever stale mapping the router may hold
        await self._remove_mapping(protocol, internal, external, port, quiet=True)

        if not await control.add_port_mapping(protocol, internal, external, description):
            return False

        async with self.lock:
            wanted = not self._is_inert() and port in self.desired_ports
            if wanted:
                self._ports_forwarded.add(port)
        if not wanted:
            # Removed from the desired set while the request was in flight
            logger.debug("UPnP: Withdrawing mapping for %s", port.name)
            await control.delete_port_mapping(protocol, external)
        return wanted

    async def _remove_mapping(
        self,
        protocol: str,
        internal: int,
        external: int,
        port: ForwardPort,
        quiet: bool,
    ) -> bool:
        control = await self._control()
        if control is None:
            return False

        removed = await control.delete_port_mapping(protocol, external)
        async with self.lock:
            self._ports_forwarded.discard(port)

        if not quiet:
            logger.info(
                "UPnP: Removed mapping for external %s %d / %s",
                port.name,
                external,
                protocol,
            )
        return removed

    # Router queries

    async def get_nat_address(self) -> str | None:
        """The external address the NAT thinks we have, or None."""
        control = await self._control()
        if control is None:
            return None
        return await control.get_external_address()

    async def get_address(self) -> list[DetectedIP] | None:
        """Our external address and an opinion on its reachability."""
        async with self.lock:
            if self._is_inert():
                logger.debug("Plugin has been disabled previously, ignoring request.")
                return None
            if self.binding.state is not BindingState.BOUND:
                logger.debug(
                    "No UPnP device found, detection of the external ip "
                    "address using the plugin has failed"
                )
                return None

        nat_address = await self.get_nat_address()
        if nat_address is None:
            return None

        try:
            detected = ipaddress.ip_address(nat_address.strip())
        except ValueError:
            logger.info("UPnP discovery has failed: unable to parse %r", nat_address)
            return None

        self._double_natted = not detected.is_global or detected.is_multicast

        async with self.lock:
            forwarded = len(self._ports_forwarded)
        status = DetectedIPStatus.NOT_SUPPORTED
        # More than one mapping AND a public address
        if forwarded > 1 and not self._double_natted:
            status = DetectedIPStatus.FULL_INTERNET

        result = DetectedIP(detected, status)
        logger.debug("Successful UPnP discovery: %s", result)
        return [result]

    async def get_upstream_max_bit_rate(self) -> int:
        """Reported upstream bit rate in bits per second, or -1."""
        return await self._get_bit_rate(0)

    async def get_downstream_max_bit_rate(self) -> int:
        """Reported downstream bit rate in bits per second, or -1."""
        return await self._get_bit_rate(1)

    async def _get_bit_rate(self, index: int) -> int:
        if self._double_natted:
            return -1
        control = await self._control()
        if control is None:
            return -1
        rates = await control.get_link_layer_max_bit_rates()
        if rates is None:
            return -1
        try:
            return int(rates[index])
        except ValueError:
            return -1
