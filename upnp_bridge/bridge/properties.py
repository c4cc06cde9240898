"""
Canonical properties and change tracking.

Raw UPnP state variables (from events) and action response fields (from
polling) are mapped to canonical property names through static tables.
The change tracker publishes a bus notification for a property only when
its value differs from the last one seen.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, NamedTuple, Optional

from upnp_bridge.upnp.didl import METADATA_NAMES, looks_like_xml, parse_didl
from upnp_bridge.upnp.errors import MalformedMetadataError
from upnp_bridge.upnp.xml_path import XmlNode, resolve

logger = logging.getLogger(__name__)

# Bus schemas (one per service)
SCHEMA_AV_TRANSPORT = "upnp.AVTransport"
SCHEMA_RENDERING_CONTROL = "upnp.RenderingControl"
SCHEMA_CONNECTION_MANAGER = "upnp.ConnectionManager"

DEFAULT_CHANNEL = "Master"

# Properties carrying embedded DIDL-Lite documents
METADATA_PROPERTIES = ("currentTrackMetaData", "AVTransportURIMetaData")
URI_PROPERTY = "AVTransportURI"
TRANSPORT_STATE = "transportState"


class PropertyMapping(NamedTuple):
    """Path of a raw value and the canonical name it is published under."""

    source: tuple[str, ...]
    name: str


@dataclass(frozen=True)
class PropertyTable:
    """
    Ordered raw-to-canonical mappings for one service operation.

    ``ignore_absent`` tables describe partial payloads (events): missing
    fields are skipped. Other tables describe full snapshots (polls):
    missing fields count as empty strings.
    """

    name: str
    mappings: tuple[PropertyMapping, ...]
    ignore_absent: bool = False

    def extract(self, node: Optional[XmlNode]) -> dict[str, Optional[str]]:
        return {m.name: resolve(node, *m.source) for m in self.mappings}


def _event_table(name: str, pairs: tuple[tuple[str, str], ...]) -> PropertyTable:
    return PropertyTable(
        name,
        tuple(PropertyMapping((variable, "@val"), canonical) for variable, canonical in pairs),
        ignore_absent=True,
    )


def _response_table(name: str, pairs: tuple[tuple[str, str], ...]) -> PropertyTable:
    return PropertyTable(
        name,
        tuple(PropertyMapping((argument,), canonical) for argument, canonical in pairs),
    )


# AVTransport LastChange: <InstanceID val="0"><TransportState val="PLAYING"/>...
AV_TRANSPORT_EVENT = _event_table(
    "AVTransport.LastChange",
    (
        ("TransportState", "transportState"),
        ("TransportStatus", "transportStatus"),
        ("TransportPlaySpeed", "transportPlaySpeed"),
        ("CurrentPlayMode", "currentPlayMode"),
        ("CurrentTransportActions", "currentTransportActions"),
        ("PlaybackStorageMedium", "playbackStorageMedium"),
        ("NumberOfTracks", "numberOfTracks"),
        ("CurrentTrack", "currentTrack"),
        ("CurrentTrackDuration", "currentTrackDuration"),
        ("CurrentMediaDuration", "currentMediaDuration"),
        ("CurrentTrackMetaData", "currentTrackMetaData"),
        ("CurrentTrackURI", "currentTrackURI"),
        ("AVTransportURI", "AVTransportURI"),
        ("AVTransportURIMetaData", "AVTransportURIMetaData"),
        ("NextAVTransportURI", "nextAVTransportURI"),
        ("NextAVTransportURIMetaData", "nextAVTransportURIMetaData"),
        ("RelativeTimePosition", "relativeTimePosition"),
        ("AbsoluteTimePosition", "absoluteTimePosition"),
    ),
)

POSITION_INFO = _response_table(
    "AVTransport.GetPositionInfo",
    (
        ("Track", "currentTrack"),
        ("TrackDuration", "currentTrackDuration"),
        ("TrackMetaData", "currentTrackMetaData"),
        ("TrackURI", "currentTrackURI"),
        ("RelTime", "relativeTimePosition"),
        ("AbsTime", "absoluteTimePosition"),
        ("RelCount", "relativeCounterPosition"),
        ("AbsCount", "absoluteCounterPosition"),
    ),
)

MEDIA_INFO = _response_table(
    "AVTransport.GetMediaInfo",
    (
        ("NrTracks", "numberOfTracks"),
        ("MediaDuration", "currentMediaDuration"),
        ("CurrentURI", "AVTransportURI"),
        ("CurrentURIMetaData", "AVTransportURIMetaData"),
        ("NextURI", "nextAVTransportURI"),
        ("NextURIMetaData", "nextAVTransportURIMetaData"),
        ("PlayMedium", "playbackStorageMedium"),
    ),
)

TRANSPORT_INFO = _response_table(
    "AVTransport.GetTransportInfo",
    (
        ("CurrentTransportState", "transportState"),
        ("CurrentTransportStatus", "transportStatus"),
        ("CurrentSpeed", "transportPlaySpeed"),
    ),
)

# ConnectionManager variables are evented directly as <e:property> children
CONNECTION_MANAGER_EVENT = PropertyTable(
    "ConnectionManager.Event",
    (
        PropertyMapping(("SourceProtocolInfo",), "sourceProtocolInfo"),
        PropertyMapping(("SinkProtocolInfo",), "sinkProtocolInfo"),
        PropertyMapping(("CurrentConnectionIDs",), "currentConnectionIDs"),
    ),
    ignore_absent=True,
)

CURRENT_CONNECTION_IDS = _response_table(
    "ConnectionManager.GetCurrentConnectionIDs",
    (("ConnectionIDs", "currentConnectionIDs"),),
)

# RenderingControl variables are per channel: <Volume channel="Master" val="40"/>
RENDERING_CONTROL_VARIABLES = {
    "Volume": "volume",
    "VolumeDB": "volumeDB",
    "Mute": "mute",
    "Loudness": "loudness",
}


def channel_property(channel: str, variable: str) -> str:
    """Canonical name of a per-channel property, e.g. ``Master/volume``."""
    return f"{channel}/{variable}"


def rendering_control_observations(instance: XmlNode) -> dict[str, Optional[str]]:
    """Flatten the per-channel variables of a RenderingControl ``InstanceID`` node."""
    observed: dict[str, Optional[str]] = {}
    for child in instance.children():
        variable = RENDERING_CONTROL_VARIABLES.get(child.local_name)
        if variable is None:
            continue
        channel = child.attribute("channel") or DEFAULT_CHANNEL
        observed[channel_property(channel, variable)] = child.attribute("val")
    return observed


MetadataProcessor = Callable[[Mapping[str, str]], dict[str, str]]


def extract_track_metadata(batch: Mapping[str, str]) -> dict[str, str]:
    """
    Flatten embedded DIDL-Lite metadata into ``metaData/...`` properties.

    A resource URL found in the metadata is returned as ``AVTransportURI``.
    Fields missing from a parsed document are returned as "" so values of
    the previous track do not linger. Malformed documents are logged and
    skipped.
    """
    extracted: dict[str, str] = {}
    parsed = False
    for name in METADATA_PROPERTIES:
        value = batch.get(name)
        if not looks_like_xml(value):
            continue
        try:
            properties, resource_url = parse_didl(value)
        except MalformedMetadataError as e:
            logger.warning(f"Skipping {name}: {e}")
            continue
        parsed = True
        extracted.update(properties)
        if resource_url:
            extracted[URI_PROPERTY] = resource_url

    if parsed:
        for name in METADATA_NAMES:
            extracted.setdefault(name, "")
    return extracted


@dataclass(frozen=True)
class PropertyChange:
    """A published property change."""

    instance_id: int
    name: str
    value: str

    def to_body(self, device_name: str) -> dict[str, str]:
        return {
            "device": f"{device_name}/{self.instance_id}/{self.name}",
            "current": self.value,
        }


# (schema, body) -> sends one bus message
Publisher = Callable[[str, dict[str, str]], Awaitable[None]]


class PropertyChangeTracker:
    """
    Last-known property values of one device, per instance id.

    Publishes a notification for each property whose observed value differs
    from the stored one. The first observation of a property always publishes.
    """

    def __init__(self, device_name: str, publisher: Publisher):
        self.device_name = device_name
        self._publisher = publisher
        self._values: dict[int, dict[str, str]] = {}

    def get(self, name: str, instance_id: int = 0) -> Optional[str]:
        return self._values.get(instance_id, {}).get(name)

    def snapshot(self, instance_id: int = 0) -> dict[str, str]:
        return dict(self._values.get(instance_id, {}))

    async def apply_observations(
        self,
        instance_id: int,
        observed: Mapping[str, Optional[str]],
        schema: str,
        metadata_processor: Optional[MetadataProcessor] = None,
        ignore_absent: bool = False,
    ) -> list[PropertyChange]:
        """
        Store observed values and publish the ones that changed.

        Args:
            instance_id: Service instance the values belong to
            observed: Canonical name -> observed value (None when absent)
            schema: Bus schema to publish under
            metadata_processor: Derives extra properties from the batch
            ignore_absent: Skip absent values instead of treating them as ""

        Returns:
            The changes that were published

        Raises:
            Exception: Whatever the publisher raises; notifications after the
                failing one are not sent
        """
        batch: dict[str, str] = {}
        for name, value in observed.items():
            if value is None:
                if ignore_absent:
                    continue
                value = ""
            batch[name] = str(value)

        if metadata_processor:
            batch.update(metadata_processor(batch))

        stored = self._values.setdefault(instance_id, {})
        changes: list[PropertyChange] = []
        for name, value in batch.items():
            if stored.get(name) == value:
                continue

            logger.debug(
                f"{self.device_name}/{instance_id}: {name} {stored.get(name)!r} -> {value!r}"
            )
            stored[name] = value
            change = PropertyChange(instance_id, name, value)
            await self._publisher(schema, change.to_body(self.device_name))
            changes.append(change)

        return changes

    async def apply_table(
        self,
        instance_id: int,
        table: PropertyTable,
        node: Optional[XmlNode],
        schema: str,
        metadata_processor: Optional[MetadataProcessor] = None,
    ) -> list[PropertyChange]:
        """Extract ``table`` from ``node`` and apply the result."""
        return await self.apply_observations(
            instance_id,
            table.extract(node),
            schema,
            metadata_processor=metadata_processor,
            ignore_absent=table.ignore_absent,
        )
