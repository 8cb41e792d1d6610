"""Fetching and parsing of UPnP device and service descriptions."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urljoin

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817
from defusedxml import DefusedXmlException

from upnpfwd.exceptions import DescriptionError
from upnpfwd.upnp.device import Device, Service
from upnpfwd.upnp.soap import DEFAULT_SOAP_TIMEOUT

logger = logging.getLogger(__name__)

DEVICE_NS = {"d": "urn:schemas-upnp-org:device-1-0"}
SERVICE_NS = {"s": "urn:schemas-upnp-org:service-1-0"}

FETCH_RETRIES = 2
FETCH_RETRY_DELAY = 0.5


async def fetch_xml(url: str, timeout: float = DEFAULT_SOAP_TIMEOUT) -> str:
    """Fetch an XML document over HTTP, retrying once on failure.

    Raises:
        DescriptionError: If the document cannot be fetched

    """
    last_error: DescriptionError | None = None

    for attempt in range(FETCH_RETRIES):
        try:
            async with aiohttp.ClientSession() as session, session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status == 200:
                    return await response.text()
                last_error = DescriptionError(
                    f"Failed to fetch {url}: HTTP {response.status}"
                )
        except asyncio.TimeoutError as e:
            last_error = DescriptionError(f"Timeout fetching {url}: {e}")
        except aiohttp.ClientError as e:
            last_error = DescriptionError(f"Network error fetching {url}: {e}")

        if attempt < FETCH_RETRIES - 1:
            logger.debug(
                "Description fetch failed (attempt %d/%d): %s, retrying...",
                attempt + 1,
                FETCH_RETRIES,
                last_error,
            )
            await asyncio.sleep(FETCH_RETRY_DELAY)

    raise last_error or DescriptionError(f"Failed to fetch {url}")


def _text(elem, path: str, ns: dict[str, str]) -> str:
    found = elem.find(path, ns)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _parse_device(
    elem,
    base_url: str,
    location: str,
    interface_address: str,
    timeout: float,
) -> Device:
    device = Device(
        device_type=_text(elem, "d:deviceType", DEVICE_NS),
        udn=_text(elem, "d:UDN", DEVICE_NS),
        friendly_name=_text(elem, "d:friendlyName", DEVICE_NS),
        location=location,
        interface_address=interface_address,
    )

    for service_elem in elem.findall("d:serviceList/d:service", DEVICE_NS):
        control_url = _text(service_elem, "d:controlURL", DEVICE_NS)
        scpd_url = _text(service_elem, "d:SCPDURL", DEVICE_NS)
        event_sub_url = _text(service_elem, "d:eventSubURL", DEVICE_NS)
        device.add_service(
            Service(
                service_type=_text(service_elem, "d:serviceType", DEVICE_NS),
                service_id=_text(service_elem, "d:serviceId", DEVICE_NS),
                control_url=urljoin(base_url, control_url) if control_url else "",
                scpd_url=urljoin(base_url, scpd_url) if scpd_url else "",
                event_sub_url=urljoin(base_url, event_sub_url) if event_sub_url else "",
                timeout=timeout,
            )
        )

    for child_elem in elem.findall("d:deviceList/d:device", DEVICE_NS):
        device.add_device(
            _parse_device(child_elem, base_url, location, interface_address, timeout)
        )

    return device


def parse_device_description(
    xml_content: str,
    location: str,
    interface_address: str = "",
    timeout: float = DEFAULT_SOAP_TIMEOUT,
) -> Device:
    """Parse a device description document into a device tree.

    Args:
        xml_content: Description XML
        location: URL the description was fetched from
        interface_address: Local address used to reach the device
        timeout: SOAP timeout given to every parsed service

    Returns:
        The root Device

    Raises:
        DescriptionError: If the document is malformed

    """
    try:
        root = ET.fromstring(xml_content)  # nosec B314 - defusedxml
    except (ET.ParseError, DefusedXmlException) as e:
        msg = f"Failed to parse device description XML: {e}"
        raise DescriptionError(msg) from e

    device_elem = root.find("d:device", DEVICE_NS)
    if device_elem is None:
        msg = "Device description has no root device element"
        raise DescriptionError(msg, {"location": location})

    base_url = _text(root, "d:URLBase", DEVICE_NS) or location
    return _parse_device(device_elem, base_url, location, interface_address, timeout)


def parse_scpd(xml_content: str) -> set[str]:
    """Return the action names declared by a service description (SCPD)."""
    try:
        root = ET.fromstring(xml_content)  # nosec B314 - defusedxml
    except (ET.ParseError, DefusedXmlException) as e:
        msg = f"Failed to parse service description XML: {e}"
        raise DescriptionError(msg) from e

    return {
        name.text.strip()
        for name in root.findall("s:actionList/s:action/s:name", SERVICE_NS)
        if name.text
    }


def iter_services(device: Device):
    """Yield every service of ``device`` and its embedded devices."""
    yield from device.services
    for child in device.devices:
        yield from iter_services(child)


async def _load_actions(service: Service, timeout: float) -> None:
    if not service.scpd_url:
        return
    try:
        service.action_names = parse_scpd(await fetch_xml(service.scpd_url, timeout))
    except DescriptionError as e:
        logger.debug("Could not load SCPD for %s: %s", service.service_type, e)


async def load_device(
    location: str,
    interface_address: str = "",
    timeout: float = DEFAULT_SOAP_TIMEOUT,
) -> Device:
    """Fetch a device description and the action lists of its services.

    Raises:
        DescriptionError: If the device description itself is unusable

    """
    xml_content = await fetch_xml(location, timeout)
    device = parse_device_description(xml_content, location, interface_address, timeout)
    await asyncio.gather(
        *(_load_actions(service, timeout) for service in iter_services(device))
    )
    logger.debug(
        "Loaded device %s (%s) from %s", device.friendly_name, device.device_type, location
    )
    return device
