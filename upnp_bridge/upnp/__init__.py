"""
UPnP protocol layer.

XML path access, SOAP actions, event subscriptions, device descriptions,
DIDL-Lite metadata and SSDP search.
"""

from .description import (
    AV_TRANSPORT,
    CONNECTION_MANAGER,
    RENDERING_CONTROL,
    DeviceDescription,
    ServiceEndpoint,
    parse_device_description,
)
from .didl import MediaItem, build_didl, parse_didl
from .errors import (
    MalformedMetadataError,
    SoapFault,
    SubscriptionError,
    TransportError,
    UnsupportedServiceError,
    UPnPError,
)
from .soap import (
    UPNP_AV_TRANSPORT,
    UPNP_CONNECTION_MANAGER,
    UPNP_RENDERING_CONTROL,
    SoapClient,
)
from .ssdp import SsdpResponse, SsdpSearcher, discover
from .subscription import (
    ServiceSubscription,
    SubscriptionManager,
    SubscriptionState,
    renewal_interval,
)
from .xml_path import XmlNode, parse_xml, resolve, resolve_node

__all__ = [
    # Errors
    "UPnPError",
    "TransportError",
    "SoapFault",
    "SubscriptionError",
    "UnsupportedServiceError",
    "MalformedMetadataError",
    # XML
    "XmlNode",
    "parse_xml",
    "resolve",
    "resolve_node",
    # SOAP
    "SoapClient",
    "UPNP_AV_TRANSPORT",
    "UPNP_RENDERING_CONTROL",
    "UPNP_CONNECTION_MANAGER",
    # Subscriptions
    "ServiceSubscription",
    "SubscriptionManager",
    "SubscriptionState",
    "renewal_interval",
    # Description
    "AV_TRANSPORT",
    "RENDERING_CONTROL",
    "CONNECTION_MANAGER",
    "DeviceDescription",
    "ServiceEndpoint",
    "parse_device_description",
    # DIDL-Lite
    "MediaItem",
    "build_didl",
    "parse_didl",
    # SSDP
    "SsdpResponse",
    "SsdpSearcher",
    "discover",
]
