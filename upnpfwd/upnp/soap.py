"""SOAP control requests for UPnP services."""

from __future__ import annotations

import asyncio
import logging
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817
from defusedxml import DefusedXmlException

from upnpfwd.exceptions import SOAPError, UPnPError

logger = logging.getLogger(__name__)

SOAP_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
UPNP_CONTROL_NS = "urn:schemas-upnp-org:control-1-0"
DEFAULT_SOAP_TIMEOUT = 10.0

# Common UPnP IGD error codes
UPNP_ERROR_HINTS = {
    "401": "Invalid Action",
    "402": "Invalid Args",
    "501": "Action Failed",
    "606": "Action not authorized",
    "714": "NoSuchEntryInArray",
    "715": "WildCardNotPermittedInSrcIP",
    "716": "WildCardNotPermittedInExtPort",
    "718": "ConflictInMappingEntry",
    "724": "SamePortValuesRequired",
    "725": "OnlyPermanentLeasesSupported",
    "726": "RemoteHostOnlySupportsWildcard",
}


def build_soap_action(
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
) -> str:
    """Build SOAP action request body.

    Arguments are serialized in the order of ``parameters``.

    Args:
        action_name: SOAP action name (e.g., "AddPortMapping")
        service_type: UPnP service type
        parameters: Action parameters

    Returns:
        SOAP request XML string

    """
    param_xml = "\n".join(
        f"      <{key}>{escape(str(value))}</{key}>"
        for key, value in parameters.items()
    )

    return f"""<?xml version="1.0"?>
<s:Envelope xmlns:s="{SOAP_ENVELOPE_NS}"
            s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
  <s:Body>
    <u:{action_name} xmlns:u="{service_type}">
{param_xml}
    </u:{action_name}>
  </s:Body>
</s:Envelope>"""


def _local_name(tag: str) -> str:
    return tag.split("}")[-1] if "}" in tag else tag


def parse_soap_response(response_xml: str, http_status: int = 200) -> dict[str, str]:
    """Parse a SOAP response body into its output arguments.

    Raises:
        SOAPError: On SOAP faults, unparseable bodies or non-200 status

    """
    try:
        root = ET.fromstring(response_xml)  # nosec B314 - defusedxml
    except (ET.ParseError, DefusedXmlException) as e:
        msg = f"SOAP action failed: HTTP {http_status} (response not parseable as XML)"
        raise SOAPError(msg, http_status=http_status) from e

    ns = {"soap": SOAP_ENVELOPE_NS}
    fault = root.find(".//soap:Fault", ns)
    if fault is not None:
        fault_string = "Unknown error"
        error_code = None
        error_description = None
        for elem in fault.iter():
            name = _local_name(elem.tag)
            if name == "faultstring" and elem.text:
                fault_string = elem.text.strip()
            elif name == "errorCode" and elem.text:
                error_code = elem.text.strip()
            elif name == "errorDescription" and elem.text:
                error_description = elem.text.strip()

        logger.debug(
            "UPnP SOAP fault response (HTTP %d): %s",
            http_status,
            response_xml[:1000],
        )
        msg = f"SOAP fault: {fault_string}"
        if error_code:
            hint = UPNP_ERROR_HINTS.get(error_code, "")
            msg += f" (UPnP error code: {error_code}"
            if error_description:
                msg += f", description: {error_description}"
            if hint:
                msg += f", hint: {hint}"
            msg += ")"
        raise SOAPError(msg, error_code=error_code, http_status=http_status)

    if http_status != 200:
        msg = f"SOAP action failed: HTTP {http_status}"
        raise SOAPError(msg, http_status=http_status)

    response_params: dict[str, str] = {}
    body = root.find(".//soap:Body", ns)
    if body is not None:
        for elem in body:
            if _local_name(elem.tag).endswith("Response"):
                for child in elem:
                    response_params[_local_name(child.tag)] = (child.text or "").strip()
                break
    return response_params


async def send_soap_action(
    control_url: str,
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
    timeout: float = DEFAULT_SOAP_TIMEOUT,
) -> dict[str, str]:
    """Send SOAP action request and parse response.

    Args:
        control_url: Control URL for the service
        action_name: SOAP action name
        service_type: UPnP service type
        parameters: Action parameters
        timeout: Total request timeout in seconds

    Returns:
        Dictionary of response parameters

    Raises:
        UPnPError: If SOAP action fails

    """
    soap_body = build_soap_action(action_name, service_type, parameters)

    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{service_type}#{action_name}"',
    }

    try:
        async with aiohttp.ClientSession() as session, session.post(
            control_url,
            data=soap_body.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            response_xml = await resp.text()
            http_status = resp.status
    except asyncio.TimeoutError as e:
        msg = f"Timeout sending SOAP action {action_name}"
        raise UPnPError(msg) from e
    except aiohttp.ClientError as e:
        msg = f"Network error sending SOAP action {action_name}: {e}"
        raise UPnPError(msg) from e

    return parse_soap_response(response_xml, http_status)
