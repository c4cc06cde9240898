"""
UPnP device description parsing.

Extracts device identity and the control/event URLs of the media renderer
services from a device description document.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urljoin

from .soap import UPNP_AV_TRANSPORT, UPNP_CONNECTION_MANAGER, UPNP_RENDERING_CONTROL
from .xml_path import XmlNode, parse_xml, resolve

logger = logging.getLogger(__name__)

# Service kind -> service type URN (matched exactly)
AV_TRANSPORT = "AVTransport"
RENDERING_CONTROL = "RenderingControl"
CONNECTION_MANAGER = "ConnectionManager"

SERVICE_TYPES = {
    AV_TRANSPORT: UPNP_AV_TRANSPORT,
    RENDERING_CONTROL: UPNP_RENDERING_CONTROL,
    CONNECTION_MANAGER: UPNP_CONNECTION_MANAGER,
}


@dataclass
class ServiceEndpoint:
    """Absolute URLs of one UPnP service."""

    kind: str
    service_type: str
    control_url: str
    event_url: Optional[str] = None


@dataclass
class DeviceDescription:
    """Parsed device description."""

    friendly_name: str = ""
    manufacturer: str = ""
    model_name: str = ""
    udn: str = ""
    services: dict[str, ServiceEndpoint] = field(default_factory=dict)

    def service(self, kind: str) -> Optional[ServiceEndpoint]:
        return self.services.get(kind)


def parse_device_description(
    document: Union[str, bytes, XmlNode], location: str
) -> DeviceDescription:
    """
    Parse a device description.

    Relative service URLs are resolved against ``location``. Only the first
    service of each kind with a control URL is kept.

    Raises:
        xml.etree.ElementTree.ParseError: If the document is not well formed
    """
    root = document if isinstance(document, XmlNode) else parse_xml(document)
    description = DeviceDescription()

    device = root.child("device")
    if device is None:
        logger.debug(f"No device element in description from {location}")
        return description

    description.friendly_name = resolve(device, "friendlyName") or ""
    description.manufacturer = resolve(device, "manufacturer") or ""
    description.model_name = resolve(device, "modelName") or ""
    description.udn = resolve(device, "UDN") or ""

    _collect_services(device, location, description)
    return description


def _collect_services(device: XmlNode, location: str, description: DeviceDescription) -> None:
    service_list = device.child("serviceList")
    if service_list is not None:
        for service in service_list.children("service"):
            service_type = (resolve(service, "serviceType") or "").strip()
            control_url = (resolve(service, "controlURL") or "").strip()
            if not control_url:
                continue

            for kind, expected in SERVICE_TYPES.items():
                if service_type != expected or kind in description.services:
                    continue
                event_url = (resolve(service, "eventSubURL") or "").strip()
                description.services[kind] = ServiceEndpoint(
                    kind=kind,
                    service_type=service_type,
                    control_url=urljoin(location, control_url),
                    event_url=urljoin(location, event_url) if event_url else None,
                )

    # Embedded devices
    device_list = device.child("deviceList")
    if device_list is not None:
        for embedded in device_list.children("device"):
            _collect_services(embedded, location, description)
