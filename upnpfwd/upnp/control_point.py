"""UPnP control point: SSDP discovery and device change notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Protocol

from upnpfwd.exceptions import UPnPError
from upnpfwd.models import DiscoveryConfig
from upnpfwd.upnp.description import load_device
from upnpfwd.upnp.device import Device
from upnpfwd.upnp.ssdp import (
    NTS_ALIVE,
    NTS_BYEBYE,
    ROOT_DEVICE_TARGET,
    SSDP_MULTICAST_IP,
    SSDP_MULTICAST_PORT,
    SSDPProtocol,
    build_msearch_request,
    create_notify_socket,
    create_search_socket,
    local_address_for,
    max_age_from_cache_control,
    parse_ssdp_message,
    udn_from_usn,
)


class DeviceChangeListener(Protocol):
    """Receives root devices appearing on and leaving the network."""

    async def device_added(self, device: Device) -> None: ...

    async def device_removed(self, device: Device) -> None: ...


class ControlPoint:
    """Discovers root devices via SSDP and reports them to listeners.

    Devices are keyed by UDN. A device is reported as added once, when its
    description has been loaded, and as removed on ``ssdp:byebye`` or when
    its CACHE-CONTROL max-age elapses without a fresh announcement.
    """

    def __init__(self, config: DiscoveryConfig | None = None):
        self.config = config or DiscoveryConfig()
        self.logger = logging.getLogger(__name__)

        self._listeners: list[DeviceChangeListener] = []
        self._devices: dict[str, Device] = {}
        self._expires_at: dict[str, float] = {}
        self._loading: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

        self._search_transport: asyncio.DatagramTransport | None = None
        self._notify_transport: asyncio.DatagramTransport | None = None
        self._search_task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_device_change_listener(self, listener: DeviceChangeListener) -> bool:
        """Register ``listener``; returns False if it is already registered."""
        if listener in self._listeners:
            return False
        self._listeners.append(listener)
        return True

    def remove_device_change_listener(self, listener: DeviceChangeListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def get_device_list(self) -> list[Device]:
        return list(self._devices.values())

    async def start(self) -> None:
        """Open the SSDP sockets and start the periodic search."""
        if self._running:
            return

        loop = asyncio.get_running_loop()
        self._search_transport, _ = await loop.create_datagram_endpoint(
            lambda: SSDPProtocol(self._on_datagram),
            sock=create_search_socket(),
        )

        if self.config.listen_notify:
            try:
                self._notify_transport, _ = await loop.create_datagram_endpoint(
                    lambda: SSDPProtocol(self._on_datagram),
                    sock=create_notify_socket(),
                )
            except OSError as e:
                # Port 1900 may be taken by a local SSDP daemon
                self.logger.debug("Not listening for SSDP NOTIFY: %s", e)

        self._running = True
        self._search_task = asyncio.create_task(self._search_loop())
        self.logger.debug("Control point started")

    async def stop(self) -> None:
        """Stop discovery. Safe to call from inside a listener callback."""
        if not self._running:
            return
        self._running = False

        current = asyncio.current_task()
        cancelled: list[asyncio.Task] = []
        if self._search_task is not None and self._search_task is not current:
            self._search_task.cancel()
            cancelled.append(self._search_task)
        self._search_task = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
                cancelled.append(task)
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        for transport in (self._search_transport, self._notify_transport):
            if transport is not None:
                transport.close()
        self._search_transport = None
        self._notify_transport = None
        self.logger.debug("Control point stopped")

    async def search(self, search_target: str | None = None) -> None:
        """Multicast one M-SEARCH request."""
        if self._search_transport is None:
            return
        target = search_target or self.config.search_target
        self._search_transport.sendto(
            build_msearch_request(target, self.config.search_mx),
            (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT),
        )
        self.logger.debug("Sent M-SEARCH for %s", target)

    async def _search_loop(self) -> None:
        while self._running:
            try:
                await self.search()
                await asyncio.sleep(self.config.search_interval)
                await self._expire_devices()
            except asyncio.CancelledError:
                break
            except OSError:
                self.logger.exception("Error in SSDP search loop")
                await asyncio.sleep(self.config.search_interval)

    def _on_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        if not self._running:
            return
        task = asyncio.create_task(self._handle_datagram(data, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        start_line, headers = parse_ssdp_message(data)
        method = start_line.split(" ", 1)[0].upper()

        if method == "NOTIFY":
            # Every device announces itself once per type; the root one suffices
            if headers.get("nt", "") != ROOT_DEVICE_TARGET:
                return
            nts = headers.get("nts", "")
            udn = udn_from_usn(headers.get("usn", ""))
            if nts == NTS_BYEBYE:
                await self._device_byebye(udn)
            elif nts == NTS_ALIVE:
                await self._device_alive(udn, headers, addr)
        elif method.startswith("HTTP/") and " 200" in start_line:
            udn = udn_from_usn(headers.get("usn", ""))
            await self._device_alive(udn, headers, addr)

    async def _device_alive(
        self, udn: str, headers: dict[str, str], addr: tuple[str, int]
    ) -> None:
        location = headers.get("location", "")
        if not udn or not location:
            return

        max_age = max_age_from_cache_control(
            headers.get("cache-control"), self.config.default_max_age
        )
        if udn in self._devices:
            self._expires_at[udn] = time.monotonic() + max_age
            return
        if udn in self._loading:
            return

        self._loading.add(udn)
        try:
            device = await load_device(
                location,
                interface_address=local_address_for(addr[0]),
                timeout=self.config.http_timeout,
            )
        except UPnPError as e:
            self.logger.debug("Ignoring device %s at %s: %s", udn, location, e)
            return
        finally:
            self._loading.discard(udn)

        if not self._running:
            return

        self._devices[udn] = device
        self._expires_at[udn] = time.monotonic() + max_age
        self.logger.info(
            "Found UPnP device %s (%s) at %s",
            device.friendly_name or udn,
            device.device_type,
            location,
        )
        await self._notify_device_added(device)

    async def _device_byebye(self, udn: str) -> None:
        device = self._devices.pop(udn, None)
        self._expires_at.pop(udn, None)
        if device is None:
            return
        self.logger.info("UPnP device %s left the network", device.friendly_name or udn)
        await self._notify_device_removed(device)

    async def _expire_devices(self) -> None:
        now = time.monotonic()
        expired = [udn for udn, expires_at in self._expires_at.items() if expires_at < now]
        for udn in expired:
            self._expires_at.pop(udn, None)
            device = self._devices.pop(udn, None)
            if device is None:
                continue
            self.logger.info("UPnP device %s expired", device.friendly_name or udn)
            await self._notify_device_removed(device)

    async def _notify_device_added(self, device: Device) -> None:
        for listener in list(self._listeners):
            try:
                await listener.device_added(device)
            except Exception:
                self.logger.exception("Device listener failed on device_added")

    async def _notify_device_removed(self, device: Device) -> None:
        for listener in list(self._listeners):
            try:
                await listener.device_removed(device)
            except Exception:
                self.logger.exception("Device listener failed on device_removed")
