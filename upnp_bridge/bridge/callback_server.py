"""
Event callback server.

HTTP server receiving UPnP event notifications (NOTIFY requests) from
subscribed devices. Requests are routed by their SID header only; the
path is ignored.
"""

import logging
import socket
from typing import Awaitable, Callable, Mapping, Optional

from aiohttp import web

logger = logging.getLogger(__name__)

# (headers, body) -> True if the event was delivered
EventHandler = Callable[[Mapping[str, str], bytes], Awaitable[bool]]


class CallbackServer:
    """
    aiohttp server accepting event notifications on any method and path.

    Usage:
        server = CallbackServer(engine.process_event, port=0)
        await server.start()
        url = server.callback_url("192.168.1.20")
    """

    def __init__(
        self,
        on_event: EventHandler,
        host: str = "0.0.0.0",
        port: int = 0,
    ):
        """
        Initialize callback server.

        Args:
            on_event: Receives headers and body of each event notification
            host: Host to bind to
            port: Port to listen on (0 for an ephemeral port)
        """
        self._on_event = on_event
        self._host = host
        self._port = port

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def port(self) -> int:
        """Bound port (the configured one before start)."""
        if self._runner:
            for address in self._runner.addresses:
                if isinstance(address, tuple) and len(address) >= 2:
                    return address[1]
        return self._port

    @property
    def is_running(self) -> bool:
        return self._site is not None

    def callback_url(self, device_address: str) -> str:
        """URL a device at ``device_address`` should deliver events to."""
        host = self._host
        if host in ("0.0.0.0", ""):
            host = _local_ip_for(device_address)
        return f"http://{host}:{self.port}/"

    async def start(self) -> None:
        """
        Start the server.

        Raises:
            OSError: If the port cannot be bound
        """
        self._app = web.Application()
        self._app.router.add_route("*", "/{tail:.*}", self.handle_request)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info(f"Event callback server started on {self._host}:{self.port}")

    async def stop(self) -> None:
        """Stop the server."""
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Event callback server stopped")

    async def handle_request(self, request: web.Request) -> web.Response:
        """Handle a notification; devices always get a 200."""
        body = await request.read()
        nt = request.headers.get("NT")
        sid = request.headers.get("SID")

        if nt != "upnp:event" or not sid:
            logger.debug(
                f"Ignoring {request.method} {request.path} from {request.remote} "
                f"(NT={nt!r}, SID={sid!r})"
            )
            return web.Response(status=200)

        try:
            delivered = await self._on_event(request.headers, body)
        except Exception as e:
            logger.error(f"Event from {request.remote} (sid={sid}) failed: {e}", exc_info=True)
        else:
            if not delivered:
                logger.debug(f"No subscription for event sid={sid}")

        return web.Response(status=200)


def _local_ip_for(remote_address: str) -> str:
    """Local IP address of the interface routing to ``remote_address``."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect((remote_address, 1900))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"
