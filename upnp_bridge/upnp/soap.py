"""
UPnP SOAP action client.

Builds SOAP envelopes for UPnP actions, posts them to a service control URL
and returns the parsed ``<Action>Response`` element.
"""

import asyncio
import logging
import xml.etree.ElementTree as ET
from typing import Optional
from xml.sax.saxutils import escape

import aiohttp

from .errors import SoapFault, TransportError
from .xml_path import XmlNode, parse_xml, resolve, resolve_node

logger = logging.getLogger(__name__)

# SOAP constants
SOAP_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"
UPNP_CONTROL_NS = "urn:schemas-upnp-org:control-1-0"

UPNP_AV_TRANSPORT = "urn:schemas-upnp-org:service:AVTransport:1"
UPNP_RENDERING_CONTROL = "urn:schemas-upnp-org:service:RenderingControl:1"
UPNP_CONNECTION_MANAGER = "urn:schemas-upnp-org:service:ConnectionManager:1"

CONTENT_TYPE = 'text/xml; charset="utf-8"'


def build_envelope(
    service_type: str,
    action: str,
    instance_id: Optional[int] = 0,
    extra_body: str = "",
) -> str:
    """Build a SOAP 1.1 envelope for ``action``.

    ``extra_body`` is inserted verbatim after the ``InstanceID`` element;
    callers are responsible for escaping its text content.
    """
    instance = "" if instance_id is None else f"<InstanceID>{instance_id}</InstanceID>"
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENVELOPE_NS}" s:encodingStyle="{SOAP_ENCODING}">'
        "<s:Body>"
        f'<u:{action} xmlns:u="{service_type}">'
        f"{instance}{extra_body}"
        f"</u:{action}>"
        "</s:Body>"
        "</s:Envelope>"
    )


def body_element(name: str, value: object) -> str:
    """Single escaped argument element, e.g. ``<Channel>Master</Channel>``."""
    return f"<{name}>{escape(str(value))}</{name}>"


class SoapClient:
    """
    Posts SOAP actions to UPnP control URLs.

    Usage:
        client = SoapClient(session)
        response = await client.invoke(control_url, UPNP_AV_TRANSPORT, "GetPositionInfo")
        rel_time = resolve(response, "RelTime")
    """

    def __init__(self, session: aiohttp.ClientSession):
        self._session = session

    async def invoke(
        self,
        control_url: str,
        service_type: str,
        action: str,
        instance_id: Optional[int] = 0,
        extra_body: str = "",
    ) -> Optional[XmlNode]:
        """
        Invoke a UPnP action.

        Args:
            control_url: Absolute service control URL
            service_type: Service type URN, used as the action namespace
            action: Action name, e.g. ``Play``
            instance_id: Value of the ``InstanceID`` argument, ``None`` to omit it
            extra_body: Additional argument elements (already escaped)

        Returns:
            The ``<action>Response`` node, or None if the body has none

        Raises:
            TransportError: If the device cannot be reached
            SoapFault: If the device answers with a non-200 status
        """
        envelope = build_envelope(service_type, action, instance_id, extra_body)
        headers = {
            "SOAPACTION": f'"{service_type}#{action}"',
            "Content-Type": CONTENT_TYPE,
        }

        logger.debug(f"SOAP {action} -> {control_url} (instance {instance_id})")
        try:
            async with self._session.post(
                control_url, data=envelope.encode("utf-8"), headers=headers
            ) as response:
                body = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"SOAP {action} to {control_url} failed: {e}") from e

        if status != 200:
            code, description = _parse_upnp_error(body)
            logger.warning(
                f"SOAP {action} failed ({status}) at {control_url}"
                + (f": UPnP error {code} {description}" if code is not None else "")
            )
            raise SoapFault(
                status,
                action=action,
                control_url=control_url,
                instance_id=instance_id,
                upnp_error_code=code,
                upnp_error_description=description,
                service_type=service_type,
                extra_body=extra_body,
            )

        try:
            document = parse_xml(body)
        except ET.ParseError as e:
            logger.warning(f"SOAP {action}: unparseable response from {control_url}: {e}")
            return None

        return resolve_node(
            document,
            f"{SOAP_ENVELOPE_NS}##Body",
            f"{service_type}##{action}Response",
        )

    async def query_state_variable(self, control_url: str, var_name: str) -> Optional[str]:
        """
        Read a state variable with the legacy ``QueryStateVariable`` action.

        Returns:
            The raw ``return`` value, or None if the response carries none
        """
        response = await self.invoke(
            control_url,
            UPNP_CONTROL_NS,
            "QueryStateVariable",
            instance_id=None,
            extra_body=f"<u:varName>{escape(var_name)}</u:varName>",
        )
        return resolve(response, "return")


def _parse_upnp_error(body: bytes) -> tuple[Optional[int], str]:
    """Extract ``errorCode``/``errorDescription`` from a SOAP fault body."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None, ""

    code: Optional[int] = None
    description = ""
    for elem in root.iter():
        if not isinstance(elem.tag, str):
            continue
        tag = elem.tag.split("}")[-1]
        if tag == "errorCode" and elem.text:
            try:
                code = int(elem.text.strip())
            except ValueError:
                pass
        elif tag == "errorDescription":
            description = (elem.text or "").strip()
    return code, description
