"""
xPL bus client.

Encodes and decodes xPL messages and exchanges them over UDP broadcast.

Wire format::

    xpl-stat
    {
    hop=1
    source=upnp-avtransport.myhost
    target=*
    }
    upnp.AVTransport
    {
    device=livingroom/0/transportState
    current=PLAYING
    }
"""

import asyncio
import inspect
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

XPL_PORT = 3865
XPL_BROADCAST = "255.255.255.255"
DEFAULT_HBEAT_INTERVAL_MINUTES = 5

MSG_COMMAND = "xpl-cmnd"
MSG_STATUS = "xpl-stat"
MSG_TRIGGER = "xpl-trig"
MESSAGE_TYPES = (MSG_COMMAND, MSG_STATUS, MSG_TRIGGER)


class XplError(Exception):
    """Malformed xPL message."""

    pass


@dataclass
class XplMessage:
    """A single xPL message."""

    msg_type: str
    source: str
    schema: str
    body: dict[str, str] = field(default_factory=dict)
    target: str = "*"
    hop: int = 1

    def encode(self) -> bytes:
        lines = [
            self.msg_type,
            "{",
            f"hop={self.hop}",
            f"source={self.source}",
            f"target={self.target}",
            "}",
            self.schema,
            "{",
        ]
        for key, value in self.body.items():
            # Values cannot span lines on the wire
            text = "" if value is None else str(value)
            lines.append(f"{key}={text.replace(chr(13), ' ').replace(chr(10), ' ')}")
        lines.append("}")
        return ("\n".join(lines) + "\n").encode("utf-8")

    @classmethod
    def decode(cls, data: Union[bytes, str]) -> "XplMessage":
        """
        Parse an xPL message.

        Raises:
            XplError: If the message is not a well formed xPL message
        """
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        lines = [line.strip() for line in text.replace("\r", "").split("\n")]
        lines = [line for line in lines if line]

        if len(lines) < 6:
            raise XplError("Truncated xPL message")

        msg_type = lines[0].lower()
        if msg_type not in MESSAGE_TYPES:
            raise XplError(f"Unknown xPL message type: {lines[0]}")

        header, index = _parse_block(lines, 1)
        if index >= len(lines):
            raise XplError("Missing xPL schema")
        schema = lines[index]
        body, _ = _parse_block(lines, index + 1)

        try:
            hop = int(header.get("hop", "1"))
        except ValueError:
            raise XplError(f"Invalid hop count: {header.get('hop')}")

        source = header.get("source")
        if not source:
            raise XplError("Missing xPL source")

        return cls(
            msg_type=msg_type,
            source=source,
            target=header.get("target", "*"),
            hop=hop,
            schema=schema,
            body=body,
        )


def _parse_block(lines: list[str], index: int) -> tuple[dict[str, str], int]:
    if index >= len(lines) or lines[index] != "{":
        raise XplError("Expected '{'")
    values: dict[str, str] = {}
    index += 1
    while index < len(lines) and lines[index] != "}":
        line = lines[index]
        if "=" not in line:
            raise XplError(f"Invalid xPL line: {line}")
        key, value = line.split("=", 1)
        # Repeated keys are kept; later values win
        values[key.strip()] = value
        index += 1
    if index >= len(lines):
        raise XplError("Expected '}'")
    return values, index + 1


CommandHandler = Callable[[XplMessage], Union[Awaitable[Any], None]]


class _XplProtocol(asyncio.DatagramProtocol):
    def __init__(self, bus: "XplBus"):
        self._bus = bus

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            message = XplMessage.decode(data)
        except XplError as e:
            logger.debug(f"Ignoring malformed xPL message from {addr[0]}: {e}")
            return
        self._bus._dispatch(message)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"xPL socket error: {exc}")


class XplBus:
    """
    xPL client over UDP broadcast.

    Listens on an ephemeral port announced to the local hub through
    ``hbeat.app`` heartbeats, and broadcasts outgoing messages to port 3865.

    Usage:
        bus = XplBus("upnp-avtransport.myhost")
        bus.on_command(handler)
        await bus.bind()
        await bus.send_stat("upnp.AVTransport", {"device": "tv/0/transportState", "current": "PLAYING"})
    """

    def __init__(
        self,
        source: str,
        broadcast_address: str = XPL_BROADCAST,
        port: int = XPL_PORT,
        bind_address: str = "0.0.0.0",
        hbeat_interval: int = DEFAULT_HBEAT_INTERVAL_MINUTES,
    ):
        self.source = source
        self._broadcast_address = broadcast_address
        self._port = port
        self._bind_address = bind_address
        self._hbeat_interval = hbeat_interval

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._handlers: list[CommandHandler] = []
        self._hbeat_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

    @property
    def is_bound(self) -> bool:
        return self._transport is not None

    @property
    def listen_port(self) -> int:
        if not self._transport:
            return 0
        return self._transport.get_extra_info("sockname")[1]

    def on_command(self, handler: CommandHandler) -> None:
        """Register a handler for ``xpl-cmnd`` messages addressed to us."""
        self._handlers.append(handler)

    async def bind(self) -> None:
        """
        Open the bus socket and start heartbeats.

        Raises:
            OSError: If the socket cannot be bound
        """
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _XplProtocol(self),
            local_addr=(self._bind_address, 0),
            allow_broadcast=True,
        )
        logger.info(f"xPL bus bound as {self.source} on port {self.listen_port}")

        if self._hbeat_interval > 0:
            self._hbeat_task = asyncio.create_task(self._hbeat_loop())

    async def close(self) -> None:
        if self._hbeat_task:
            self._hbeat_task.cancel()
            try:
                await self._hbeat_task
            except asyncio.CancelledError:
                pass
            self._hbeat_task = None

        if self._transport:
            try:
                await self.send(self._hbeat_message("hbeat.end"))
            except OSError:
                pass
            self._transport.close()
            self._transport = None

    async def send(self, message: XplMessage) -> None:
        """
        Broadcast a message.

        Raises:
            ConnectionError: If the bus is not bound
            OSError: If the datagram cannot be sent
        """
        if not self._transport:
            raise ConnectionError("xPL bus is not bound")
        self._transport.sendto(message.encode(), (self._broadcast_address, self._port))
        logger.debug(f"xPL {message.msg_type} {message.schema} {message.body}")

    async def send_stat(self, schema: str, body: dict[str, str]) -> None:
        await self.send(XplMessage(MSG_STATUS, self.source, schema, body))

    async def send_trig(self, schema: str, body: dict[str, str]) -> None:
        await self.send(XplMessage(MSG_TRIGGER, self.source, schema, body))

    def _dispatch(self, message: XplMessage) -> None:
        if message.msg_type != MSG_COMMAND:
            return
        if message.target not in ("*", self.source):
            return

        for handler in self._handlers:
            try:
                result = handler(message)
            except Exception as e:
                logger.error(f"xPL command handler failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def _hbeat_message(self, schema: str = "hbeat.app") -> XplMessage:
        return XplMessage(
            MSG_STATUS,
            self.source,
            schema,
            {
                "interval": str(self._hbeat_interval),
                "port": str(self.listen_port),
                "remote-ip": _local_ip(),
            },
        )

    async def _hbeat_loop(self) -> None:
        while True:
            try:
                await self.send(self._hbeat_message())
                await asyncio.sleep(self._hbeat_interval * 60)
            except asyncio.CancelledError:
                break
            except OSError as e:
                logger.warning(f"xPL heartbeat failed: {e}")
                await asyncio.sleep(self._hbeat_interval * 60)


def _local_ip() -> str:
    """Local IP address used for outgoing traffic."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"
