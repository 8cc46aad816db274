"""
Command dispatch for the control socket.

Each protocol line is parsed into a Command and routed to a handler. A
handler validates its arguments, calls into the host system, and writes the
reply to the issuing client. Argument problems are raised as CommandError
and reported as ``ERR <reason>``; the connection stays open either way.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any

from hostlink.config import ControlConfig
from hostlink.devices.state import DeviceClass, PausedEvent, iter_slots, snapshot_events
from hostlink.protocol.codec import (
    Command,
    LINE_ENCODING,
    LINE_ERRORS,
    encode_line,
    format_crc,
    format_err,
    format_event,
    format_ok,
    format_screenshot_header,
    parse_command,
)
from hostlink.protocol.screen import (
    Region,
    clamp_region,
    iter_visible_rows,
    region_crc32,
    screenshot_size,
)

if TYPE_CHECKING:
    from hostlink.clients.connection import ClientConnection
    from hostlink.clients.registry import ClientRegistry
    from hostlink.host.base import BlitRect, Framebuffer, HostSystem

logger = logging.getLogger(__name__)

# Handler type
CommandHandler = Callable[["ClientConnection", Command], Coroutine[Any, Any, None]]

# Media commands and the device class they address
PROTECTED_LOAD_COMMANDS: dict[str, DeviceClass] = {
    "fddload": DeviceClass.FDD,
    "moload": DeviceClass.MO,
    "rdiskload": DeviceClass.RDISK,
    "cartload": DeviceClass.CARTRIDGE,
}

EJECT_COMMANDS: dict[str, DeviceClass] = {
    "cdeject": DeviceClass.CDROM,
    "fddeject": DeviceClass.FDD,
    "moeject": DeviceClass.MO,
    "rdiskeject": DeviceClass.RDISK,
    "carteject": DeviceClass.CARTRIDGE,
}

_MEDIA_NAMES: dict[DeviceClass, str] = {
    DeviceClass.FDD: "floppy",
    DeviceClass.CDROM: "CD-ROM",
    DeviceClass.MO: "MO",
    DeviceClass.RDISK: "removable disk",
    DeviceClass.CARTRIDGE: "cartridge",
}


class CommandError(Exception):
    """A command was rejected; the message is sent back as ``ERR <message>``."""


@dataclass(frozen=True, slots=True)
class CommandInfo:
    """A registered command."""

    name: str
    usage: str
    description: str
    handler: CommandHandler
    min_args: int = 0


class CommandDispatcher:
    """
    Routes parsed commands to their handlers.

    Attributes:
        host: Host system the commands act on.
        registry: Client registry, used to broadcast pause changes.
        config: Loaded configuration (slot counts, path limit).
    """

    def __init__(
        self,
        host: "HostSystem",
        registry: "ClientRegistry",
        config: ControlConfig | None = None,
    ) -> None:
        self.host = host
        self.registry = registry
        self.config = config or ControlConfig()

        self._commands: dict[str, CommandInfo] = {}

        self._register("cdload", "cdload <id> <path>", "mount CD-ROM image", self._cmd_cdload, 2)
        for verb, device_class in PROTECTED_LOAD_COMMANDS.items():
            self._register(
                verb,
                f"{verb} <id> <path> <wp>",
                f"mount {_MEDIA_NAMES[device_class]} image (wp=0|1)",
                partial(self._cmd_load_protected, device_class),
                3,
            )
        for verb, device_class in EJECT_COMMANDS.items():
            self._register(
                verb,
                f"{verb} <id>",
                f"eject {_MEDIA_NAMES[device_class]}",
                partial(self._cmd_eject, device_class),
                1,
            )
        self._register("pause", "pause", "toggle pause", self._cmd_pause)
        self._register("hardreset", "hardreset", "hard reset", self._cmd_hardreset)
        self._register("status", "status", "query all LED/media state", self._cmd_status)
        self._register("screenshot", "screenshot [monitor]", "raw BGRA framebuffer dump", self._cmd_screenshot)
        self._register("screencrc", "screencrc [mon [x y w h]]", "CRC-32 of screen region", self._cmd_screencrc)
        self._register("mousecapture", "mousecapture", "capture mouse", partial(self._cmd_mouse, True))
        self._register("mouserelease", "mouserelease", "release mouse", partial(self._cmd_mouse, False))
        self._register("version", "version", "print version", self._cmd_version)
        self._register("help", "help", "list commands", self._cmd_help)
        self._register("exit", "exit", "exit emulator", self._cmd_exit)

    def _register(
        self,
        name: str,
        usage: str,
        description: str,
        handler: CommandHandler,
        min_args: int = 0,
    ) -> None:
        self._commands[name] = CommandInfo(name, usage, description, handler, min_args)

    @property
    def commands(self) -> list[CommandInfo]:
        """Registered commands in help order."""
        return list(self._commands.values())

    async def handle(self, client: "ClientConnection", line: str) -> None:
        """
        Parse and execute one protocol line for a client.

        Empty lines are ignored. Protocol errors are answered with ``ERR``;
        a host failure is logged and answered with ``ERR <verb> failed``.

        Args:
            client: The issuing client.
            line: Line text without its terminator.

        Raises:
            ConnectionError: If the reply could not be written.
        """
        command = parse_command(line)
        if command is None:
            return

        info = self._commands.get(command.name)
        if info is None:
            logger.debug("Unknown command from client %d: %s", client.id, command.verb)
            await client.send(format_err(f"unknown command: {command.verb}"))
            return

        logger.debug("Client %d: %s %s", client.id, command.name, " ".join(command.args))

        try:
            if command.argc < info.min_args:
                raise CommandError("missing arguments")
            await info.handler(client, command)
        except CommandError as e:
            await client.send(format_err(str(e)))
        except ConnectionError:
            raise
        except Exception as e:
            logger.exception("Error handling %s from client %d: %s", command.name, client.id, e)
            await client.send(format_err(f"{command.name} failed"))

    # -------------------------------------------------------------------------
    # Argument helpers
    # -------------------------------------------------------------------------

    def _parse_slot(self, value: str, device_class: DeviceClass, error: str) -> int:
        try:
            slot = int(value)
        except ValueError:
            raise CommandError(error) from None
        if not 0 <= slot < self.config.devices.slots(device_class):
            raise CommandError(error)
        return slot

    def _path_too_long(self, path: str) -> bool:
        return len(path.encode(LINE_ENCODING, LINE_ERRORS)) >= self.config.server.max_path_length

    def _parse_monitor(self, command: Command) -> int:
        if not command.args:
            return 0
        try:
            index = int(command.args[0])
        except ValueError:
            raise CommandError("invalid monitor index") from None
        if not 0 <= index < self.config.devices.monitors:
            raise CommandError("invalid monitor index")
        return index

    def _resolve_screen(self, command: Command) -> tuple["BlitRect", "Framebuffer"]:
        """Find the visible area and framebuffer of the requested monitor."""
        index = self._parse_monitor(command)

        if not self.host.monitor_active(index):
            raise CommandError("monitor not active")

        visible = self.host.blit_rect(index)
        framebuffer = self.host.framebuffer(index)
        if visible.is_empty or framebuffer is None:
            raise CommandError("no framebuffer available")

        return visible, framebuffer

    # -------------------------------------------------------------------------
    # Media
    # -------------------------------------------------------------------------

    async def _cmd_cdload(self, client: "ClientConnection", command: Command) -> None:
        """cdload <id> <path...>: unquoted path words are joined with spaces."""
        slot = self._parse_slot(command.args[0], DeviceClass.CDROM, "invalid drive id")
        path = " ".join(command.args[1:])
        if not path:
            raise CommandError("missing arguments")
        if self._path_too_long(path):
            raise CommandError("path too long")

        self.host.mount(DeviceClass.CDROM, slot, path)
        await client.send(format_ok(f"{DeviceClass.CDROM.value} {slot} loaded"))

    async def _cmd_load_protected(
        self,
        device_class: DeviceClass,
        client: "ClientConnection",
        command: Command,
    ) -> None:
        """<class>load <id> <path> <wp>"""
        slot = self._parse_slot(command.args[0], device_class, "invalid arguments")
        path = command.args[1]
        if not path or self._path_too_long(path):
            raise CommandError("invalid arguments")
        try:
            write_protect = int(command.args[2]) != 0
        except ValueError:
            raise CommandError("invalid arguments") from None

        self.host.mount(device_class, slot, path, write_protect)
        await client.send(format_ok(f"{device_class.value} {slot} loaded"))

    async def _cmd_eject(
        self,
        device_class: DeviceClass,
        client: "ClientConnection",
        command: Command,
    ) -> None:
        slot = self._parse_slot(command.args[0], device_class, "invalid drive id")
        self.host.eject(device_class, slot)
        await client.send(format_ok(f"{device_class.value} {slot} ejected"))

    # -------------------------------------------------------------------------
    # Machine control
    # -------------------------------------------------------------------------

    async def _cmd_pause(self, client: "ClientConnection", command: Command) -> None:
        """Toggle pause, reply to the issuer, then tell every client."""
        self.host.set_paused(not self.host.is_paused())
        paused = self.host.is_paused()

        await client.send(format_ok("paused" if paused else "unpaused"))
        await self.registry.broadcast(format_event(PausedEvent(paused)))

    async def _cmd_hardreset(self, client: "ClientConnection", command: Command) -> None:
        self.host.hard_reset()
        await client.send(format_ok("hard reset"))

    async def _cmd_exit(self, client: "ClientConnection", command: Command) -> None:
        # Reply first: power-off may tear down this connection.
        await client.send(format_ok("exiting"))
        self.host.power_off()

    async def _cmd_mouse(self, captured: bool, client: "ClientConnection", command: Command) -> None:
        self.host.set_mouse_capture(captured)
        await client.send(format_ok("mouse captured" if captured else "mouse released"))

    async def _cmd_version(self, client: "ClientConnection", command: Command) -> None:
        await client.send(format_ok(f"{self.host.name} {self.host.version}"))

    async def _cmd_help(self, client: "ClientConnection", command: Command) -> None:
        lines = [encode_line("Commands:")]
        lines.extend(encode_line(f"  {info.usage:<26} - {info.description}") for info in self._commands.values())
        lines.append(format_ok())
        await client.send(*lines)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status_lines(self) -> list[bytes]:
        """
        Full current picture: every LED and media line, then the pause state.

        The LED/media values are derived exactly as the poller derives its
        events, so a client that reads this and then follows push events
        never misses a transition.
        """
        lines: list[bytes] = []
        for device_class, slot in iter_slots(self.config.devices):
            state = self.host.device_state(device_class, slot)
            lines.extend(format_event(event) for event in snapshot_events(device_class, slot, state))
        lines.append(format_event(PausedEvent(self.host.is_paused())))
        return lines

    async def _cmd_status(self, client: "ClientConnection", command: Command) -> None:
        await client.send(*self.status_lines(), format_ok())

    # -------------------------------------------------------------------------
    # Screen
    # -------------------------------------------------------------------------

    async def _cmd_screenshot(self, client: "ClientConnection", command: Command) -> None:
        """
        screenshot [monitor]

        Reply: ``OK <w> <h> <n>\\n`` followed by exactly n bytes of BGRA
        pixels, visible rows top to bottom, no trailing terminator.
        """
        visible, framebuffer = self._resolve_screen(command)

        header = format_screenshot_header(visible.width, visible.height, screenshot_size(visible))
        await client.send(header, *iter_visible_rows(framebuffer, visible))

    async def _cmd_screencrc(self, client: "ClientConnection", command: Command) -> None:
        """
        screencrc [monitor [x y w h]]

        The region is relative to the visible area and clamped to it. The
        reply always reports the full visible width and height.
        """
        visible, framebuffer = self._resolve_screen(command)

        region: Region | None = None
        if command.argc >= 5:
            try:
                x, y, w, h = (int(arg) for arg in command.args[1:5])
            except ValueError:
                raise CommandError("invalid region") from None
            region = Region(x, y, w, h)

        clamped = clamp_region(region, visible)
        if clamped.is_empty:
            raise CommandError("region out of bounds")

        crc = region_crc32(framebuffer, visible, clamped)
        await client.send(format_crc(crc, visible.width, visible.height))
