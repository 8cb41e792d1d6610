"""Pytest configuration and shared fixtures for upnpfwd tests."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from upnpfwd.exceptions import SOAPError
from upnpfwd.forwarder.binding import (
    ROUTER_DEVICE,
    WAN_DEVICE,
    WAN_IP_CONNECTION,
    WANCON_DEVICE,
)
from upnpfwd.forwarder.ports import ForwardPort, ForwardPortStatus
from upnpfwd.models import Config, ForwarderConfig
from upnpfwd.upnp import description as description_mod
from upnpfwd.upnp.device import Device, Service


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("unit", "marks tests as unit tests"),
        ("network", "marks tests as UPnP transport tests"),
        ("forwarder", "marks tests as forwarding agent tests"),
        ("config", "marks tests as configuration tests"),
        ("observability", "marks tests as logging tests"),
        ("cli", "marks tests as CLI tests"),
        ("property", "marks tests as property-based tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep UPNPFWD_* variables from the developer's shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("UPNPFWD_"):
            monkeypatch.delenv(key, raising=False)


class FakeRouter:
    """Stands in for the SOAP endpoint of a router.

    Records every action with its arguments in wire order. ``failures`` maps
    an action name to how many times it should fail (-1 for always). With
    ``delay`` set, every action yields to the event loop before answering.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.failures: dict[str, int] = {}
        self.external_ip = "93.184.216.34"
        self.bit_rates = ("1000000", "8000000")
        self.on_call: Callable[[str], None] | None = None
        self.delay: float | None = None

    async def __call__(
        self,
        control_url: str,
        action_name: str,
        service_type: str,
        parameters: Mapping[str, str],
        timeout: float = 10.0,
    ) -> dict[str, str]:
        self.calls.append((action_name, dict(parameters)))
        if self.on_call is not None:
            self.on_call(action_name)
        if self.delay is not None:
            await asyncio.sleep(self.delay)

        remaining = self.failures.get(action_name, 0)
        if remaining:
            if remaining > 0:
                self.failures[action_name] = remaining - 1
            msg = "SOAP fault: UPnPError"
            raise SOAPError(msg, error_code="501", http_status=500)

        if action_name == "GetExternalIPAddress":
            return {"NewExternalIPAddress": self.external_ip}
        if action_name == "GetLinkLayerMaxBitRates":
            return {
                "NewUpstreamMaxBitRate": self.bit_rates[0],
                "NewDownstreamMaxBitRate": self.bit_rates[1],
            }
        return {}

    def calls_of(self, action_name: str) -> list[dict[str, str]]:
        return [params for name, params in self.calls if name == action_name]

    def reset(self) -> None:
        self.calls.clear()


@pytest.fixture
def fake_router():
    """Patch the SOAP transport with a recording fake router."""
    router = FakeRouter()
    with patch("upnpfwd.upnp.device.send_soap_action", new=router):
        yield router


class FakeControlPoint:
    """Control point double that never touches the network."""

    def __init__(self):
        self.listeners: list = []
        self.running = False
        self.start_count = 0
        self.stop_count = 0
        self.search_count = 0

    @property
    def is_running(self) -> bool:
        return self.running

    def add_device_change_listener(self, listener) -> bool:
        if listener in self.listeners:
            return False
        self.listeners.append(listener)
        return True

    def remove_device_change_listener(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def start(self) -> None:
        self.running = True
        self.start_count += 1

    async def stop(self) -> None:
        self.running = False
        self.stop_count += 1

    async def search(self, search_target: str | None = None) -> None:
        self.search_count += 1


@pytest.fixture
def control_point():
    return FakeControlPoint()


@pytest.fixture
def make_igd():
    """Factory building an IGD device tree.

    ``connections`` lists the service types offered by the first
    WANConnectionDevice.
    """

    def _make(
        udn: str = "uuid:igd-1",
        connections: tuple[str, ...] = (WAN_IP_CONNECTION,),
        interface_address: str = "192.168.1.10",
        with_wan_device: bool = True,
        with_connection_device: bool = True,
        device_type: str = ROUTER_DEVICE,
    ) -> Device:
        router = Device(
            device_type,
            udn=udn,
            friendly_name=f"Router {udn}",
            location="http://192.168.1.1:5000/rootDesc.xml",
            interface_address=interface_address,
        )
        if not with_wan_device:
            return router
        wan = router.add_device(Device(WAN_DEVICE, udn=f"{udn}-wan"))
        if not with_connection_device:
            return router
        wancon = wan.add_device(Device(WANCON_DEVICE, udn=f"{udn}-wancon"))
        for service_type in connections:
            wancon.add_service(
                Service(
                    service_type,
                    control_url=f"http://192.168.1.1:5000/ctl/{service_type.split(':')[-2]}",
                )
            )
        return router

    return _make


class RecordingCallback:
    """Collects every status report in arrival order."""

    def __init__(self):
        self.reports: list[tuple[ForwardPort, ForwardPortStatus]] = []

    def port_forward_status(
        self, statuses: Mapping[ForwardPort, ForwardPortStatus]
    ) -> None:
        self.reports.extend(statuses.items())

    def statuses(self) -> dict[ForwardPort, ForwardPortStatus]:
        return dict(self.reports)


@pytest.fixture
def callback():
    return RecordingCallback()


@pytest.fixture
def fast_config():
    """Configuration with no delay between mapping attempts."""
    return Config(forwarder=ForwarderConfig(mapping_retry_interval=0.0))


def _response_cm(result):
    cm = MagicMock()
    if isinstance(result, BaseException):
        cm.__aenter__ = AsyncMock(side_effect=result)
    else:
        status, body = result
        response = MagicMock()
        response.status = status
        response.text = AsyncMock(return_value=body)
        cm.__aenter__ = AsyncMock(return_value=response)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


class FakeHTTP:
    """Serves canned responses to aiohttp requests.

    Each URL maps to a queue of ``(status, body)`` pairs or exceptions; the
    last entry keeps being served once the queue is down to one.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.requests: list[tuple[str, str, dict]] = []

    def add(self, url: str, *results) -> None:
        self.routes.setdefault(url, []).extend(results)

    def _request(self, method: str, url: str, **kwargs):
        self.requests.append((method, url, kwargs))
        queue = self.routes.get(url)
        if not queue:
            return _response_cm((404, ""))
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        return _response_cm(result)

    def session(self, *args, **kwargs):
        session = MagicMock()
        session.get = lambda url, **kw: self._request("GET", url, **kw)
        session.post = lambda url, **kw: self._request("POST", url, **kw)
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=session)
        cm.__aexit__ = AsyncMock(return_value=False)
        return cm


@pytest.fixture
def fake_http(monkeypatch):
    """Patch aiohttp.ClientSession with canned responses."""
    monkeypatch.setattr(description_mod, "FETCH_RETRY_DELAY", 0.0)
    http = FakeHTTP()
    with patch("aiohttp.ClientSession", side_effect=http.session):
        yield http
