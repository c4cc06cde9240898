"""
DIDL-Lite metadata.

Builds the metadata document sent with ``SetAVTransportURI`` and extracts
track fields from the metadata documents renderers report.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse
from xml.sax.saxutils import escape as _escape

from .errors import MalformedMetadataError
from .xml_path import XmlNode, parse_xml, resolve

logger = logging.getLogger(__name__)

DIDL_NS = "urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/"
DC_NS = "http://purl.org/dc/elements/1.1/"
UPNP_NS = "urn:schemas-upnp-org:metadata-1-0/upnp/"
SEC_NS = "http://www.sec.co.kr/"

DEFAULT_CONTENT_TYPE = "video/mpeg"
DEFAULT_SUBTITLE_TYPE = "srt"
DEFAULT_UPNP_CLASS = "object.item.videoItem"

# DIDL element -> synthetic property name
METADATA_FIELDS = (
    (f"{DC_NS}##title", "metaData/title"),
    (f"{UPNP_NS}##artist", "metaData/artist"),
    (f"{DC_NS}##creator", "metaData/artist"),
    (f"{UPNP_NS}##genre", "metaData/genre"),
    (f"{UPNP_NS}##album", "metaData/album"),
    (f"{UPNP_NS}##originalTrackNumber", "metaData/trackNumber"),
    (f"{UPNP_NS}##albumArtURI", "metaData/albumArtURI"),
    (f"{UPNP_NS}##class", "metaData/class"),
)

# Every synthetic name parse_didl can produce
METADATA_NAMES = tuple(dict.fromkeys(name for _, name in METADATA_FIELDS))


def escape(value: str) -> str:
    return _escape(value, {'"': "&quot;"})


@dataclass
class MediaItem:
    """Structured description of a media resource to load on a renderer."""

    url: str
    title: str = ""
    creator: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE
    protocol_info: Optional[str] = None
    subtitle_url: Optional[str] = None
    subtitle_type: str = DEFAULT_SUBTITLE_TYPE
    upnp_class: str = DEFAULT_UPNP_CLASS

    @property
    def resource_protocol_info(self) -> str:
        return self.protocol_info or f"http-get:*:{self.content_type}:*"

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        path = urlparse(self.url).path
        return unquote(path.rsplit("/", 1)[-1]) or self.url


def build_didl(item: MediaItem) -> str:
    """Build a DIDL-Lite document describing ``item``."""
    didl = (
        f'<DIDL-Lite xmlns="{DIDL_NS}" xmlns:dc="{DC_NS}" '
        f'xmlns:upnp="{UPNP_NS}" xmlns:sec="{SEC_NS}">'
        '<item id="0" parentID="-1" restricted="1">'
        f"<dc:title>{escape(item.display_title)}</dc:title>"
    )
    if item.creator:
        didl += f"<dc:creator>{escape(item.creator)}</dc:creator>"
    didl += f"<upnp:class>{escape(item.upnp_class)}</upnp:class>"
    didl += (
        f'<res protocolInfo="{escape(item.resource_protocol_info)}">'
        f"{escape(item.url)}</res>"
    )

    if item.subtitle_url:
        subtitle = escape(item.subtitle_url)
        subtitle_type = escape(item.subtitle_type)
        didl += (
            f'<res protocolInfo="http-get:*:text/{subtitle_type}:*">{subtitle}</res>'
            f'<sec:CaptionInfoEx sec:type="{subtitle_type}">{subtitle}</sec:CaptionInfoEx>'
            f'<sec:CaptionInfo sec:type="{subtitle_type}">{subtitle}</sec:CaptionInfo>'
        )

    didl += "</item></DIDL-Lite>"
    return didl


def parse_didl(metadata: str) -> tuple[dict[str, str], Optional[str]]:
    """
    Extract track fields from a DIDL-Lite document.

    Returns:
        ``(properties, resource_url)`` where properties maps synthetic
        ``metaData/...`` names to values and resource_url is the first
        ``<res>`` value, if any

    Raises:
        MalformedMetadataError: If the document is not well formed
    """
    try:
        root = parse_xml(metadata)
    except ET.ParseError as e:
        raise MalformedMetadataError(f"Invalid DIDL-Lite metadata: {e}") from e

    entry = _find_entry(root)
    if entry is None:
        return {}, None

    properties: dict[str, str] = {}
    for path, name in METADATA_FIELDS:
        if name in properties:
            continue
        value = resolve(entry, path)
        if value is not None:
            properties[name] = value.strip()

    resource = resolve(entry, f"{DIDL_NS}##res")
    resource_url = resource.strip() if resource else None
    return properties, resource_url or None


def _find_entry(root: XmlNode) -> Optional[XmlNode]:
    if root.matches(f"{DIDL_NS}##DIDL-Lite"):
        return root.child(f"{DIDL_NS}##item") or root.child(f"{DIDL_NS}##container")
    # Bare <item> fragment
    if root.local_name in ("item", "container"):
        return root
    return None


def looks_like_xml(value: Optional[str]) -> bool:
    """Renderers report ``NOT_IMPLEMENTED`` or empty strings for absent metadata."""
    return bool(value) and value.lstrip().startswith("<")
