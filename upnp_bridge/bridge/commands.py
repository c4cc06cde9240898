"""
Bus command handling.

Turns inbound ``xpl-cmnd`` bodies into renderer actions.

Body keys:
    device       target path ``<alias pattern>[/<sub target>][/<instance id>]``
    command      play | pause | stop | volume | status | load
    url          resource to load (load, play)
    metadata     explicit DIDL-Lite document (load, play)
    title, creator, contenttype, protocolinfo, subtitle, subtitletype
                 used to build DIDL-Lite metadata when none is given
    autoplay     start playback after load (true|1|enable|enabled)
    speed        play speed (default 1)
    channel      volume channel when the path has no sub target
    current      desired volume
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from upnp_bridge.upnp.didl import DEFAULT_CONTENT_TYPE, DEFAULT_SUBTITLE_TYPE, MediaItem

from .device import RendererDevice
from .properties import DEFAULT_CHANNEL

logger = logging.getLogger(__name__)

AUTOPLAY_PATTERN = re.compile(r"^(true|1|enable|enabled)$", re.IGNORECASE)

CMD_PLAY = "play"
CMD_PAUSE = "pause"
CMD_STOP = "stop"
CMD_VOLUME = "volume"
CMD_STATUS = "status"
CMD_LOAD = "load"


@dataclass
class BusCommand:
    """A command addressed to one or more renderers."""

    schema: str
    device_pattern: str
    body: dict[str, str] = field(default_factory=dict)
    sub_target: Optional[str] = None
    instance_id: int = 0

    @property
    def command(self) -> str:
        return self.body.get("command", "").strip().lower()

    @classmethod
    def from_body(cls, schema: str, body: dict[str, str]) -> "BusCommand":
        pattern, sub_target, instance_id = parse_device_path(body.get("device", ""))
        return cls(
            schema=schema,
            device_pattern=pattern,
            body=dict(body),
            sub_target=sub_target,
            instance_id=instance_id,
        )


def parse_device_path(path: str) -> tuple[str, Optional[str], int]:
    """
    Split ``alias[/sub/target][/<digits>]``.

    Returns:
        (alias pattern, sub target or None, instance id)
    """
    segments = [s for s in path.strip().split("/")]
    pattern = segments[0]
    rest = segments[1:]

    instance_id = 0
    if rest and rest[-1].isdigit():
        instance_id = int(rest.pop())

    sub_target = "/".join(rest) or None
    return pattern, sub_target, instance_id


def alias_matcher(pattern: str) -> "re.Pattern[str]":
    """Compile a ``*`` glob into a case-insensitive full-match regex."""
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{regex}$", re.IGNORECASE)


def is_autoplay(value: Optional[str]) -> bool:
    return bool(value and AUTOPLAY_PATTERN.match(value.strip()))


def media_item_from_body(body: dict[str, str]) -> MediaItem:
    return MediaItem(
        url=body["url"],
        title=body.get("title", ""),
        creator=body.get("creator", ""),
        content_type=body.get("contenttype") or DEFAULT_CONTENT_TYPE,
        protocol_info=body.get("protocolinfo") or None,
        subtitle_url=body.get("subtitle") or None,
        subtitle_type=body.get("subtitletype") or DEFAULT_SUBTITLE_TYPE,
    )


class CommandHandler:
    """Executes bus commands against a renderer."""

    async def handle(self, device: RendererDevice, command: BusCommand) -> bool:
        """
        Execute ``command`` on ``device``.

        Returns:
            True if an action was issued, False for no-op commands

        Raises:
            UPnPError: If the device rejects or cannot perform the action
            ValueError: If the command body is incomplete
        """
        name = command.command

        if name == CMD_PLAY:
            await self._handle_play(device, command)
        elif name == CMD_PAUSE:
            await device.pause(command.instance_id)
        elif name == CMD_STOP:
            await device.stop(command.instance_id)
        elif name == CMD_VOLUME:
            await self._handle_volume(device, command)
        elif name == CMD_LOAD:
            await self._handle_load(device, command, is_autoplay(command.body.get("autoplay")))
        elif name == CMD_STATUS:
            return False
        else:
            logger.debug(f"Ignoring unknown command {name!r} for {device.alias}")
            return False

        return True

    async def _handle_play(self, device: RendererDevice, command: BusCommand) -> None:
        instance_id = command.instance_id
        if command.body.get("url"):
            instance_id = await self._handle_load(device, command, autoplay=False)
        await device.play(instance_id, command.body.get("speed") or 1)

    async def _handle_load(
        self, device: RendererDevice, command: BusCommand, autoplay: bool
    ) -> int:
        if not command.body.get("url"):
            raise ValueError("load requires a url")
        return await device.load(
            media_item_from_body(command.body),
            metadata=command.body.get("metadata") or None,
            autoplay=autoplay,
        )

    async def _handle_volume(self, device: RendererDevice, command: BusCommand) -> None:
        value = command.body.get("current")
        if value is None or value == "":
            raise ValueError("volume requires a current value")
        channel = command.sub_target or command.body.get("channel") or DEFAULT_CHANNEL
        await device.set_volume(command.instance_id, channel, value)
