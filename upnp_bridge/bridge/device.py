"""
Media renderer device controller.

One instance per discovered renderer. Fetches the device description,
subscribes to service events, runs the polling loops and exposes the UPnP
actions used by bus commands.
"""

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from enum import Enum
from typing import Optional, Union

import aiohttp
from aiohttp import hdrs

from upnp_bridge.config import PollingConfig
from upnp_bridge.upnp.description import (
    AV_TRANSPORT,
    CONNECTION_MANAGER,
    RENDERING_CONTROL,
    DeviceDescription,
    parse_device_description,
)
from upnp_bridge.upnp.didl import MediaItem, build_didl
from upnp_bridge.upnp.errors import (
    SoapFault,
    SubscriptionError,
    TransportError,
    UnsupportedServiceError,
    UPnPError,
)
from upnp_bridge.upnp.soap import SoapClient, body_element
from upnp_bridge.upnp.subscription import ServiceSubscription, SubscriptionManager
from upnp_bridge.upnp.xml_path import XmlNode, parse_xml, resolve

from .properties import (
    AV_TRANSPORT_EVENT,
    CONNECTION_MANAGER_EVENT,
    CURRENT_CONNECTION_IDS,
    DEFAULT_CHANNEL,
    MEDIA_INFO,
    POSITION_INFO,
    SCHEMA_AV_TRANSPORT,
    SCHEMA_CONNECTION_MANAGER,
    SCHEMA_RENDERING_CONTROL,
    TRANSPORT_INFO,
    TRANSPORT_STATE,
    PropertyChange,
    PropertyChangeTracker,
    Publisher,
    channel_property,
    extract_track_metadata,
    rendering_control_observations,
)

logger = logging.getLogger(__name__)

EVENT_NS = "urn:schemas-upnp-org:event-1-0"

# Connect order: a service's subscription completes before the next
# service is set up
SERVICE_ORDER = (AV_TRANSPORT, RENDERING_CONTROL, CONNECTION_MANAGER)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RendererDevice:
    """
    A UPnP media renderer.

    State changes observed through events and polling are published on the
    bus by a PropertyChangeTracker; actions are plain SOAP calls.
    """

    def __init__(
        self,
        usn: str,
        alias: str,
        location: str,
        address: str,
        session: aiohttp.ClientSession,
        publisher: Publisher,
        subscriptions: SubscriptionManager,
        callback_url: str,
        polling: Optional[PollingConfig] = None,
    ):
        """
        Initialize device.

        Args:
            usn: Stable device identifier (USN without service suffix)
            alias: Name used on the bus
            location: URL of the device description
            address: IP address the discovery response came from
            session: Shared HTTP session
            publisher: Sends a bus message (schema, body)
            subscriptions: Subscription manager
            callback_url: URL the device delivers events to
            polling: Polling intervals
        """
        self.usn = usn
        self.alias = alias
        self.location = location
        self.address = address
        self.callback_url = callback_url

        self.state = ConnectionState.DISCONNECTED
        self.description: Optional[DeviceDescription] = None
        self.last_ping: float = 0.0
        self.volumes: dict[str, float] = {}
        self.subscriptions: dict[str, ServiceSubscription] = {}

        self._session = session
        self._soap = SoapClient(session)
        self._subscription_manager = subscriptions
        self._polling = polling or PollingConfig()
        self._tracker = PropertyChangeTracker(alias, publisher)
        self._poll_tasks: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return f"<RendererDevice {self.alias} ({self.usn}) {self.state.value}>"

    @property
    def properties(self) -> PropertyChangeTracker:
        return self._tracker

    def control_url(self, service: str) -> Optional[str]:
        if not self.description:
            return None
        endpoint = self.description.service(service)
        return endpoint.control_url if endpoint else None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ping(self) -> None:
        """Record that the device answered a discovery search."""
        self.last_ping = time.monotonic()

    async def connect(self) -> bool:
        """
        Fetch the description, subscribe to events and start polling.

        A device that is connecting or connected is left alone. Failures
        are logged and leave the device disconnected.

        Returns:
            True if the device is connected
        """
        if self.state != ConnectionState.DISCONNECTED:
            return self.state == ConnectionState.CONNECTED

        self.state = ConnectionState.CONNECTING
        self.ping()

        try:
            description = await self._fetch_description()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{self.alias}: cannot fetch description from {self.location}: {e}")
            description = None
        except ET.ParseError as e:
            logger.error(f"{self.alias}: invalid description from {self.location}: {e}")
            description = None

        if description is None:
            self.state = ConnectionState.DISCONNECTED
            return False

        self.description = description
        self.state = ConnectionState.CONNECTED
        logger.info(
            f"Connected to {self.alias} ({description.friendly_name or self.usn}): "
            f"services={sorted(description.services)}"
        )

        for service in SERVICE_ORDER:
            endpoint = description.service(service)
            if endpoint is None:
                logger.debug(f"{self.alias}: no {service} service")
                continue
            if endpoint.event_url:
                await self._subscribe(service, endpoint.event_url)
            self._install_polling(service)

        return True

    async def close(self) -> None:
        """Cancel polling loops and subscription renewals."""
        for task in self._poll_tasks:
            task.cancel()
        for task in self._poll_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_tasks.clear()

        for subscription in self.subscriptions.values():
            subscription.cancel()

    async def _fetch_description(self) -> Optional[DeviceDescription]:
        async with self._session.get(self.location) as response:
            if response.status != 200:
                logger.error(
                    f"{self.alias}: invalid status {response.status} from {self.location}"
                )
                return None
            media_type = response.headers.get(hdrs.CONTENT_TYPE, "").split(";", 1)[0].strip()
            if media_type != "text/xml":
                logger.error(
                    f"{self.alias}: invalid content type {media_type!r} from {self.location}"
                )
                return None
            body = await response.read()

        return parse_device_description(body, self.location)

    async def _subscribe(self, service: str, event_url: str) -> None:
        subscription = ServiceSubscription(service=service, event_url=event_url)
        self.subscriptions[service] = subscription
        try:
            await self._subscription_manager.subscribe(subscription, self.callback_url)
        except (TransportError, SubscriptionError) as e:
            logger.error(f"{self.alias}: {service} subscription failed: {e}")

    def subscription_for_sid(self, sid: str) -> Optional[ServiceSubscription]:
        for subscription in self.subscriptions.values():
            if subscription.sid and subscription.sid == sid:
                return subscription
        return None

    # =========================================================================
    # Polling
    # =========================================================================

    def _install_polling(self, service: str) -> None:
        if service == AV_TRANSPORT:
            interval_ms, tick = self._polling.avtransport_interval_ms, self.poll_av_transport
        elif service == RENDERING_CONTROL:
            interval_ms, tick = (
                self._polling.rendering_control_interval_ms,
                self.poll_rendering_control,
            )
        else:
            interval_ms, tick = (
                self._polling.connection_manager_interval_ms,
                self.poll_connection_manager,
            )

        if interval_ms <= 0:
            logger.debug(f"{self.alias}: {service} polling disabled")
            return

        task = asyncio.create_task(self._poll_loop(service, interval_ms / 1000.0, tick))
        self._poll_tasks.append(task)

    async def _poll_loop(self, service: str, interval: float, tick) -> None:
        """Run ``tick`` every ``interval`` seconds; a failed tick does not stop the loop."""
        while True:
            try:
                await asyncio.sleep(interval)
                await tick()
            except asyncio.CancelledError:
                break
            except UPnPError as e:
                logger.warning(f"{self.alias}: {service} poll failed: {e}")
            except Exception as e:
                logger.error(f"{self.alias}: {service} poll error: {e}", exc_info=True)

    async def poll_av_transport(self, instance_id: int = 0) -> list[PropertyChange]:
        """
        One AVTransport poll tick.

        By default only position info is polled, and only while playing;
        media and transport info arrive through events.
        """
        if self._polling.full_avtransport_poll:
            changes = await self.update_media_info(instance_id)
            changes += await self.update_position_info(instance_id)
            changes += await self.update_transport_info(instance_id)
            return changes

        if self._tracker.get(TRANSPORT_STATE, instance_id) != "PLAYING":
            return []
        return await self.update_position_info(instance_id)

    async def poll_rendering_control(self, instance_id: int = 0) -> list[PropertyChange]:
        return await self.update_volume(instance_id, DEFAULT_CHANNEL)

    async def poll_connection_manager(self) -> list[PropertyChange]:
        return await self.update_connection_ids()

    async def update_position_info(self, instance_id: int = 0) -> list[PropertyChange]:
        response = await self._invoke(AV_TRANSPORT, "GetPositionInfo", instance_id)
        if response is None:
            return []
        return await self._tracker.apply_table(
            instance_id, POSITION_INFO, response, SCHEMA_AV_TRANSPORT, extract_track_metadata
        )

    async def update_media_info(self, instance_id: int = 0) -> list[PropertyChange]:
        response = await self._invoke(AV_TRANSPORT, "GetMediaInfo", instance_id)
        if response is None:
            return []
        return await self._tracker.apply_table(
            instance_id, MEDIA_INFO, response, SCHEMA_AV_TRANSPORT, extract_track_metadata
        )

    async def update_transport_info(self, instance_id: int = 0) -> list[PropertyChange]:
        response = await self._invoke(AV_TRANSPORT, "GetTransportInfo", instance_id)
        if response is None:
            return []
        return await self._tracker.apply_table(
            instance_id, TRANSPORT_INFO, response, SCHEMA_AV_TRANSPORT
        )

    async def update_volume(
        self, instance_id: int = 0, channel: str = DEFAULT_CHANNEL
    ) -> list[PropertyChange]:
        response = await self._invoke(
            RENDERING_CONTROL, "GetVolume", instance_id, body_element("Channel", channel)
        )
        if response is None:
            return []
        observed = {channel_property(channel, "volume"): resolve(response, "CurrentVolume")}
        return await self._apply_rendering_control(instance_id, observed, ignore_absent=False)

    async def update_connection_ids(self) -> list[PropertyChange]:
        response = await self._invoke(
            CONNECTION_MANAGER, "GetCurrentConnectionIDs", instance_id=None
        )
        if response is None:
            return []
        return await self._tracker.apply_table(
            0, CURRENT_CONNECTION_IDS, response, SCHEMA_CONNECTION_MANAGER
        )

    async def _apply_rendering_control(
        self,
        instance_id: int,
        observed: dict[str, Optional[str]],
        ignore_absent: bool,
    ) -> list[PropertyChange]:
        changes = await self._tracker.apply_observations(
            instance_id, observed, SCHEMA_RENDERING_CONTROL, ignore_absent=ignore_absent
        )
        for change in changes:
            channel, _, variable = change.name.rpartition("/")
            if variable != "volume":
                continue
            try:
                self.volumes[channel] = float(change.value)
            except ValueError:
                logger.debug(f"{self.alias}: non-numeric volume {change.value!r}")
        return changes

    # =========================================================================
    # Events
    # =========================================================================

    async def process_event(
        self, subscription: ServiceSubscription, body: Union[str, bytes]
    ) -> list[PropertyChange]:
        """Apply a NOTIFY body delivered for ``subscription``."""
        try:
            document = parse_xml(body)
        except ET.ParseError as e:
            logger.warning(f"{self.alias}: unparseable {subscription.service} event: {e}")
            return []

        properties = document.children(f"{EVENT_NS}##property")

        if subscription.service == CONNECTION_MANAGER:
            observed: dict[str, Optional[str]] = {}
            for prop in properties:
                for name, value in CONNECTION_MANAGER_EVENT.extract(prop).items():
                    if value is not None:
                        observed[name] = value
            return await self._tracker.apply_observations(
                0, observed, SCHEMA_CONNECTION_MANAGER, ignore_absent=True
            )

        changes: list[PropertyChange] = []
        for prop in properties:
            last_change = resolve(prop, "LastChange")
            if not last_change:
                continue
            try:
                event = parse_xml(last_change)
            except ET.ParseError as e:
                logger.warning(f"{self.alias}: unparseable LastChange: {e}")
                continue

            for instance in event.children("InstanceID"):
                instance_id = _parse_instance_id(instance.attribute("val"))
                if subscription.service == AV_TRANSPORT:
                    changes += await self._tracker.apply_table(
                        instance_id,
                        AV_TRANSPORT_EVENT,
                        instance,
                        SCHEMA_AV_TRANSPORT,
                        extract_track_metadata,
                    )
                else:
                    changes += await self._apply_rendering_control(
                        instance_id, rendering_control_observations(instance), ignore_absent=True
                    )

        if not properties:
            logger.debug(f"{self.alias}: event without properties")
        return changes

    # =========================================================================
    # Actions
    # =========================================================================

    async def _invoke(
        self,
        service: str,
        action: str,
        instance_id: Optional[int] = 0,
        extra_body: str = "",
    ) -> Optional[XmlNode]:
        if not self.description or not self.description.service(service):
            raise UnsupportedServiceError(service)
        endpoint = self.description.services[service]
        return await self._soap.invoke(
            endpoint.control_url, endpoint.service_type, action, instance_id, extra_body
        )

    async def stop(self, instance_id: int = 0) -> None:
        await self._invoke(AV_TRANSPORT, "Stop", instance_id)

    async def pause(self, instance_id: int = 0) -> None:
        await self._invoke(AV_TRANSPORT, "Pause", instance_id)

    async def play(self, instance_id: int = 0, speed: Union[str, int] = 1) -> None:
        await self._invoke(AV_TRANSPORT, "Play", instance_id, body_element("Speed", speed))

    async def set_volume(
        self,
        instance_id: int = 0,
        channel: str = DEFAULT_CHANNEL,
        desired_volume: Union[str, int, float] = 0,
    ) -> None:
        """
        Set the volume of a channel.

        Raises:
            UnsupportedServiceError: If the device has no RenderingControl service
        """
        await self._invoke(
            RENDERING_CONTROL,
            "SetVolume",
            instance_id,
            body_element("Channel", channel) + body_element("DesiredVolume", desired_volume),
        )

    async def set_av_transport_uri(self, instance_id: int, url: str, metadata: str = "") -> None:
        await self._invoke(
            AV_TRANSPORT,
            "SetAVTransportURI",
            instance_id,
            body_element("CurrentURI", url) + body_element("CurrentURIMetaData", metadata),
        )

    async def prepare_for_connection(self, remote_protocol_info: str) -> int:
        """
        Ask the ConnectionManager for a connection.

        Returns:
            The AVTransport instance id to use (0 when none is assigned)

        Raises:
            UnsupportedServiceError: If the device has no ConnectionManager service
        """
        response = await self._invoke(
            CONNECTION_MANAGER,
            "PrepareForConnection",
            instance_id=None,
            extra_body=(
                body_element("RemoteProtocolInfo", remote_protocol_info)
                + body_element("PeerConnectionManager", "")
                + body_element("PeerConnectionID", -1)
                + body_element("Direction", "Input")
            ),
        )
        instance_id = _parse_instance_id(resolve(response, "AVTransportID"))
        return max(instance_id, 0)

    async def load(
        self,
        item: MediaItem,
        metadata: Optional[str] = None,
        autoplay: bool = False,
    ) -> int:
        """
        Load a media resource, optionally starting playback.

        Args:
            item: Resource description, used to build DIDL-Lite metadata
            metadata: Explicit metadata document, replaces the generated one
            autoplay: Send Play after the URI is set

        Returns:
            The instance id the resource was loaded on
        """
        didl = metadata or build_didl(item)

        try:
            instance_id = await self.prepare_for_connection(item.resource_protocol_info)
        except UnsupportedServiceError:
            instance_id = 0
        except SoapFault as e:
            if not e.is_not_implemented:
                raise
            logger.debug(f"{self.alias}: PrepareForConnection not implemented, using instance 0")
            instance_id = 0

        await self.set_av_transport_uri(instance_id, item.url, didl)
        logger.info(f"{self.alias}: loaded {item.url} on instance {instance_id}")

        if autoplay:
            await self.play(instance_id)
        return instance_id

    async def query_state_variable(self, service: str, var_name: str) -> Optional[str]:
        control_url = self.control_url(service)
        if not control_url:
            raise UnsupportedServiceError(service)
        return await self._soap.query_state_variable(control_url, var_name)


def _parse_instance_id(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        return int(value.strip())
    except ValueError:
        return 0
