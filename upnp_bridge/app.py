"""
UPnP Bridge Application.

Main orchestrator that wires together all components and manages lifecycle.
"""

import asyncio
import logging
import signal
from typing import Mapping, Optional, Union

import aiohttp

from upnp_bridge.bridge import CallbackServer, Engine
from upnp_bridge.bus import XplBus
from upnp_bridge.config import Config
from upnp_bridge.upnp import SsdpSearcher, SubscriptionManager

logger = logging.getLogger(__name__)


class UPnPBridge:
    """
    Main UPnP Bridge application.

    Orchestrates all components:
    - xPL bus (XplBus)
    - Event callback server (CallbackServer)
    - Device registry (Engine)
    - SSDP search (SsdpSearcher)

    Usage:
        config = load_config(...)
        app = UPnPBridge(config)
        await app.run()
    """

    def __init__(self, config: Config):
        """
        Initialize UPnPBridge.

        Args:
            config: Validated configuration
        """
        self._config = config
        self._is_running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self._session: Optional[aiohttp.ClientSession] = None
        self._bus: Optional[XplBus] = None
        self._server: Optional[CallbackServer] = None
        self._engine: Optional[Engine] = None
        self._searcher: Optional[SsdpSearcher] = None

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    async def start(self) -> None:
        """
        Start UPnPBridge and all components.

        Startup order:
        1. HTTP client session
        2. xPL bus
        3. Event callback server
        4. Device registry
        5. SSDP search

        Raises:
            OSError: If the bus socket or callback server cannot be bound
        """
        logger.info("Starting UPnP Bridge...")
        config = self._config

        # 1. Shared HTTP session
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=config.server.request_timeout)
        )

        # 2. Bus
        self._bus = XplBus(
            source=config.bus.source,
            broadcast_address=config.bus.broadcast_address,
            port=config.bus.port,
            bind_address=config.bus.bind_address,
            hbeat_interval=config.bus.hbeat_interval,
        )
        await self._bus.bind()

        # 3. Callback server
        self._server = CallbackServer(
            on_event=self._on_event,
            host=config.server.bind_address,
            port=config.server.callback_port,
        )
        await self._server.start()

        # 4. Engine
        self._engine = Engine(
            session=self._session,
            publisher=self._bus.send_stat,
            subscriptions=SubscriptionManager(
                self._session, config.subscription.timeout_seconds
            ),
            callback_url=self._server.callback_url,
            aliases=config.devices.aliases,
            polling=config.polling,
            command_schemas=config.bus.command_schemas,
        )
        self._bus.on_command(self._engine.on_bus_message)

        # 5. Discovery
        self._searcher = SsdpSearcher(
            on_response=self._engine.process_discovery_response,
            search_target=config.discovery.search_target,
            interval=config.discovery.search_interval,
            mx=config.discovery.mx,
        )
        await self._searcher.start()

        self._is_running = True
        logger.info(f"UPnP Bridge running as {config.bus.source}")

    async def _on_event(self, headers: Mapping[str, str], body: Union[str, bytes]) -> bool:
        if not self._engine:
            return False
        return await self._engine.process_event(headers, body)

    async def stop(self) -> None:
        """
        Stop UPnPBridge and all components.

        Shutdown order (reverse of startup).
        """
        logger.info("Stopping UPnP Bridge...")
        self._is_running = False

        if self._searcher:
            try:
                await self._searcher.stop()
            except Exception as e:
                logger.warning(f"Error stopping SSDP search: {e}")

        if self._engine:
            try:
                await self._engine.close()
            except Exception as e:
                logger.warning(f"Error closing devices: {e}")

        if self._server:
            try:
                await self._server.stop()
            except Exception as e:
                logger.warning(f"Error stopping callback server: {e}")

        if self._bus:
            try:
                await self._bus.close()
            except Exception as e:
                logger.warning(f"Error closing xPL bus: {e}")

        if self._session:
            await self._session.close()
            self._session = None

        logger.info("UPnP Bridge stopped")

    async def run(self) -> None:
        """
        Run UPnPBridge until interrupted.

        Sets up signal handlers for graceful shutdown on SIGINT/SIGTERM.
        """
        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Shutdown signal received")
            self._shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handle_signal)

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    @property
    def is_running(self) -> bool:
        """Check if the application is running."""
        return self._is_running
