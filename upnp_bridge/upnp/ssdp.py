"""
SSDP search client.

Sends M-SEARCH requests for a search target and hands every response to a
callback. Used periodically by the bridge and once by ``--discover``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
SSDP_MX = 3

DEFAULT_SEARCH_TARGET = "urn:schemas-upnp-org:service:AVTransport:1"
DEFAULT_SEARCH_INTERVAL_SECONDS = 5.0


@dataclass
class SsdpResponse:
    """A parsed SSDP search response."""

    status: int
    address: tuple[str, int]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def usn(self) -> str:
        return self.headers.get("USN", "")

    @property
    def location(self) -> str:
        return self.headers.get("LOCATION", "")


ResponseCallback = Callable[[SsdpResponse], None]


def build_search_message(search_target: str, mx: int = SSDP_MX) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode("utf-8")


def parse_ssdp_response(data: bytes, address: tuple[str, int]) -> Optional[SsdpResponse]:
    """Parse an SSDP response datagram; header names are upper-cased."""
    text = data.decode("utf-8", errors="ignore")
    lines = text.split("\r\n")
    if not lines or not lines[0].upper().startswith("HTTP/"):
        return None  # NOTIFY or M-SEARCH from another control point

    parts = lines[0].split(None, 2)
    try:
        status = int(parts[1])
    except (IndexError, ValueError):
        return None

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.upper().strip()] = value.strip()

    return SsdpResponse(status=status, address=(address[0], address[1]), headers=headers)


class _SearchProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_response: ResponseCallback):
        self._on_response = on_response

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        response = parse_ssdp_response(data, addr)
        if response is None:
            return
        try:
            self._on_response(response)
        except Exception as e:
            logger.error(f"Error handling SSDP response from {addr[0]}: {e}", exc_info=True)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"SSDP socket error: {exc}")


class SsdpSearcher:
    """
    Periodic SSDP searcher.

    Usage:
        searcher = SsdpSearcher(on_response=engine.process_discovery_response)
        await searcher.start()
        ...
        await searcher.stop()
    """

    def __init__(
        self,
        on_response: ResponseCallback,
        search_target: str = DEFAULT_SEARCH_TARGET,
        interval: float = DEFAULT_SEARCH_INTERVAL_SECONDS,
        mx: int = SSDP_MX,
    ):
        self._on_response = on_response
        self._search_target = search_target
        self._interval = interval
        self._mx = mx

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._search_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Open the search socket and start searching."""
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _SearchProtocol(self._on_response),
            local_addr=("0.0.0.0", 0),
        )
        self._search_task = asyncio.create_task(self._search_loop())
        logger.info(f"SSDP search started for {self._search_target} every {self._interval}s")

    async def stop(self) -> None:
        if self._search_task:
            self._search_task.cancel()
            try:
                await self._search_task
            except asyncio.CancelledError:
                pass
            self._search_task = None

        if self._transport:
            self._transport.close()
            self._transport = None

    def search(self) -> None:
        """Send a single M-SEARCH."""
        if not self._transport:
            return
        self._transport.sendto(
            build_search_message(self._search_target, self._mx), (SSDP_ADDR, SSDP_PORT)
        )
        logger.debug(f"Sent SSDP M-SEARCH for {self._search_target}")

    async def _search_loop(self) -> None:
        while True:
            try:
                self.search()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except OSError as e:
                logger.warning(f"SSDP search failed: {e}")
                await asyncio.sleep(self._interval)


async def discover(
    timeout: float = 5.0,
    search_target: str = DEFAULT_SEARCH_TARGET,
) -> list[SsdpResponse]:
    """
    Search once and collect responses for ``timeout`` seconds.

    Returns:
        One response per device (USN without service suffix)
    """
    found: dict[str, SsdpResponse] = {}

    def collect(response: SsdpResponse) -> None:
        if response.status == 200 and response.usn:
            found.setdefault(response.usn.split("::", 1)[0], response)

    searcher = SsdpSearcher(collect, search_target=search_target, interval=timeout + 1)
    await searcher.start()
    try:
        await asyncio.sleep(timeout)
    finally:
        await searcher.stop()

    return list(found.values())
