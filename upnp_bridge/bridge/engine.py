"""
Device registry and routing.

The engine owns every renderer controller, keyed by USN. It creates
controllers from discovery responses, routes event notifications by SID
and routes bus commands by alias pattern.
"""

import asyncio
import logging
from typing import Callable, Mapping, Optional, Union

import aiohttp

from upnp_bridge.bus.xpl import XplMessage
from upnp_bridge.config import DEFAULT_COMMAND_SCHEMAS, PollingConfig
from upnp_bridge.upnp.ssdp import SsdpResponse
from upnp_bridge.upnp.subscription import SubscriptionManager

from .commands import BusCommand, CommandHandler, alias_matcher
from .device import ConnectionState, RendererDevice
from .properties import Publisher

logger = logging.getLogger(__name__)

# device address -> callback URL handed out in SUBSCRIBE
CallbackUrlFactory = Callable[[str], str]


def base_usn(usn: str) -> str:
    """Strip the ``::<service type>`` suffix of a USN."""
    return usn.split("::", 1)[0].strip()


class Engine:
    """
    Registry of renderer devices.

    Usage:
        engine = Engine(session, bus.send_stat, subscriptions, server.callback_url)
        searcher = SsdpSearcher(engine.process_discovery_response)
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        publisher: Publisher,
        subscriptions: SubscriptionManager,
        callback_url: CallbackUrlFactory,
        aliases: Optional[Mapping[str, str]] = None,
        polling: Optional[PollingConfig] = None,
        command_schemas: Optional[list[str]] = None,
    ):
        self.devices: dict[str, RendererDevice] = {}

        self._session = session
        self._publisher = publisher
        self._subscriptions = subscriptions
        self._callback_url = callback_url
        self._aliases = dict(aliases or {})
        self._polling = polling or PollingConfig()
        self._command_schemas = {
            s.lower() for s in (command_schemas or DEFAULT_COMMAND_SCHEMAS)
        }
        self._command_handler = CommandHandler()
        self._pending: set[asyncio.Task] = set()

    def device_by_alias(self, alias: str) -> Optional[RendererDevice]:
        for device in self.devices.values():
            if device.alias == alias:
                return device
        return None

    # =========================================================================
    # Discovery
    # =========================================================================

    def process_discovery_response(self, response: SsdpResponse) -> None:
        """SSDP callback: handle the response in a task."""
        self._spawn(self.handle_discovery_response(response))

    async def handle_discovery_response(
        self, response: SsdpResponse
    ) -> Optional[RendererDevice]:
        """
        Register or ping the device behind a discovery response.

        Known devices are only pinged; a known device whose connect failed
        is connected again. New devices are created only from 200 responses.

        Returns:
            The device, or None if the response was ignored
        """
        if not response.usn:
            logger.debug(f"Discovery response from {response.address[0]} without USN")
            return None

        usn = base_usn(response.usn)
        device = self.devices.get(usn)
        if device:
            device.ping()
            if device.state == ConnectionState.DISCONNECTED and response.status == 200:
                # A restarted renderer may come back on another address or port
                if response.location and response.location != device.location:
                    logger.info(f"{device.alias} moved to {response.location}")
                    device.location = response.location
                address = response.address[0]
                if address != device.address:
                    device.address = address
                    device.callback_url = self._callback_url(address)
                logger.debug(f"Retrying connect to {device.alias}")
                await device.connect()
            return device

        if response.status != 200:
            logger.debug(f"Ignoring discovery response {response.status} for {usn}")
            return None
        if not response.location:
            logger.warning(f"Discovery response for {usn} has no LOCATION")
            return None

        address = response.address[0]
        device = RendererDevice(
            usn=usn,
            alias=self._aliases.get(usn, usn),
            location=response.location,
            address=address,
            session=self._session,
            publisher=self._publisher,
            subscriptions=self._subscriptions,
            callback_url=self._callback_url(address),
            polling=self._polling,
        )
        self.devices[usn] = device
        logger.info(f"Discovered {device.alias} at {response.location}")

        await device.connect()
        return device

    # =========================================================================
    # Events
    # =========================================================================

    async def process_event(self, headers: Mapping[str, str], body: Union[str, bytes]) -> bool:
        """
        Deliver an event notification to the subscription owning its SID.

        Returns:
            True if a subscription claimed the event
        """
        if headers.get("NT") != "upnp:event":
            return False
        sid = headers.get("SID")
        if not sid:
            return False

        for device in self.devices.values():
            subscription = device.subscription_for_sid(sid)
            if subscription:
                await device.process_event(subscription, body)
                return True

        logger.debug(f"Dropping event for unknown sid {sid}")
        return False

    # =========================================================================
    # Bus commands
    # =========================================================================

    async def process_bus_command(
        self, message: XplMessage
    ) -> dict[str, Optional[Exception]]:
        """
        Run a bus command on every device whose alias matches its target.

        Returns:
            Alias -> None on success, or the exception the command raised
        """
        if message.schema.lower() not in self._command_schemas:
            return {}
        if not message.body.get("device"):
            logger.debug(f"Command without device: {message.body}")
            return {}

        command = BusCommand.from_body(message.schema, message.body)
        matcher = alias_matcher(command.device_pattern)

        results: dict[str, Optional[Exception]] = {}
        for device in list(self.devices.values()):
            if not matcher.match(device.alias):
                continue
            try:
                await self._command_handler.handle(device, command)
                results[device.alias] = None
            except Exception as e:
                logger.error(f"Command {command.command!r} on {device.alias} failed: {e}")
                results[device.alias] = e

        if not results:
            logger.debug(f"No device matches {command.device_pattern!r}")
        return results

    def on_bus_message(self, message: XplMessage) -> None:
        """Bus callback: handle the command in a task."""
        self._spawn(self.process_bus_command(message))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close every device and cancel pending work."""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()

        for device in self.devices.values():
            await device.close()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Background task failed: {exc}", exc_info=exc)
