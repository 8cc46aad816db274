"""
In-memory host system.

`SimulatedHost` keeps every piece of host state the control socket can
observe or change in plain Python objects. It backs the standalone
``python -m hostlink`` service and the test suite.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from hostlink.config import DeviceLayout
from hostlink.devices.state import DeviceClass, SlotState
from hostlink.host.base import BYTES_PER_PIXEL, BlitRect

logger = logging.getLogger(__name__)


class SimulatedFramebuffer:
    """Fixed-size BGRA framebuffer backed by a bytearray."""

    def __init__(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self._data = bytearray(width * height * BYTES_PER_PIXEL)

    def row(self, y: int) -> memoryview:
        stride = self.width * BYTES_PER_PIXEL
        return memoryview(self._data)[y * stride : (y + 1) * stride]

    def set_pixel(self, x: int, y: int, b: int, g: int, r: int, a: int = 0xFF) -> None:
        offset = (y * self.width + x) * BYTES_PER_PIXEL
        self._data[offset : offset + BYTES_PER_PIXEL] = bytes((b, g, r, a))

    def fill(self, b: int, g: int, r: int, a: int = 0xFF) -> None:
        """Paint every pixel with one colour."""
        self._data[:] = bytes((b, g, r, a)) * (self.width * self.height)


@dataclass
class _Slot:
    active: bool = False
    write_active: bool = False
    path: str = ""
    write_protect: bool = False


@dataclass
class _Monitor:
    active: bool = False
    rect: BlitRect = field(default_factory=lambda: BlitRect(0, 0, 0, 0))
    framebuffer: SimulatedFramebuffer | None = None


class SimulatedHost:
    """
    Host system simulated in memory.

    Monitor 0 is active with a ``screen_size`` visible area; other monitors
    start inactive. All media slots start empty.

    Args:
        layout: Slot counts per device class and monitor count.
        name: Reported by the `version` command.
        version: Reported by the `version` command.
        screen_size: Visible width and height of monitor 0.
        on_power_off: Called when a client issues `exit`.
    """

    def __init__(
        self,
        layout: DeviceLayout | None = None,
        *,
        name: str = "hostlink",
        version: str = "0.1.0",
        screen_size: tuple[int, int] = (640, 480),
        on_power_off: Callable[[], None] | None = None,
    ) -> None:
        self.layout = layout or DeviceLayout()
        self.name = name
        self.version = version
        self.on_power_off = on_power_off

        self.paused = False
        self.mouse_captured = False
        self.reset_count = 0
        self.powered_off = False

        self._slots: dict[tuple[DeviceClass, int], _Slot] = {
            (device_class, slot): _Slot()
            for device_class in DeviceClass
            for slot in range(self.layout.slots(device_class))
        }

        self._monitors = [_Monitor() for _ in range(self.layout.monitors)]
        if self._monitors:
            width, height = screen_size
            self.attach_monitor(0, width, height)

    # -------------------------------------------------------------------------
    # HostSystem
    # -------------------------------------------------------------------------

    def is_paused(self) -> bool:
        return self.paused

    def set_paused(self, paused: bool) -> None:
        logger.info("Host %s", "paused" if paused else "resumed")
        self.paused = paused

    def hard_reset(self) -> None:
        logger.info("Host hard reset")
        self.reset_count += 1

    def power_off(self) -> None:
        logger.info("Host power off requested")
        self.powered_off = True
        if self.on_power_off is not None:
            self.on_power_off()

    def set_mouse_capture(self, captured: bool) -> None:
        self.mouse_captured = captured

    def mount(
        self,
        device_class: DeviceClass,
        slot: int,
        path: str,
        write_protect: bool = False,
    ) -> None:
        state = self._slot(device_class, slot)
        state.path = path
        state.write_protect = write_protect
        logger.info("Mounted %s %d: %s%s", device_class.value, slot, path, " (ro)" if write_protect else "")

    def eject(self, device_class: DeviceClass, slot: int) -> None:
        state = self._slot(device_class, slot)
        state.path = ""
        state.write_protect = False
        logger.info("Ejected %s %d", device_class.value, slot)

    def device_state(self, device_class: DeviceClass, slot: int) -> SlotState:
        state = self._slot(device_class, slot)
        return SlotState(
            active=state.active,
            write_active=state.write_active,
            empty=not state.path,
        )

    def monitor_active(self, index: int) -> bool:
        return self._monitors[index].active

    def blit_rect(self, index: int) -> BlitRect:
        return self._monitors[index].rect

    def framebuffer(self, index: int) -> SimulatedFramebuffer | None:
        return self._monitors[index].framebuffer

    # -------------------------------------------------------------------------
    # Simulation controls
    # -------------------------------------------------------------------------

    def set_activity(
        self,
        device_class: DeviceClass,
        slot: int,
        *,
        active: bool = False,
        write_active: bool = False,
    ) -> None:
        """Set the activity flags the next poll will observe."""
        state = self._slot(device_class, slot)
        state.active = active
        state.write_active = write_active

    def mounted_path(self, device_class: DeviceClass, slot: int) -> str:
        return self._slot(device_class, slot).path

    def is_write_protected(self, device_class: DeviceClass, slot: int) -> bool:
        return self._slot(device_class, slot).write_protect

    def attach_monitor(
        self,
        index: int,
        width: int,
        height: int,
        *,
        border: int = 0,
    ) -> SimulatedFramebuffer:
        """
        Activate a monitor with a fresh framebuffer.

        Args:
            index: Monitor index.
            width: Visible width.
            height: Visible height.
            border: Unused pixels around the visible area on every side.

        Returns:
            The new framebuffer (black, opaque).
        """
        framebuffer = SimulatedFramebuffer(width + 2 * border, height + 2 * border)
        framebuffer.fill(0, 0, 0)
        self._monitors[index] = _Monitor(
            active=True,
            rect=BlitRect(border, border, width, height),
            framebuffer=framebuffer,
        )
        return framebuffer

    def detach_monitor(self, index: int) -> None:
        self._monitors[index] = _Monitor()

    def _slot(self, device_class: DeviceClass, slot: int) -> _Slot:
        try:
            return self._slots[(device_class, slot)]
        except KeyError:
            raise IndexError(f"No {device_class.value} slot {slot}") from None
