"""
Host system interface.

The control socket never touches hardware itself. Everything it reads or
changes on the host (media, pause state, reset, power, mouse capture, video
output) goes through an object implementing `HostSystem`. All calls are
synchronous and are made from the event loop thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from hostlink.devices.state import DeviceClass, SlotState

BYTES_PER_PIXEL = 4


@dataclass(frozen=True, slots=True)
class BlitRect:
    """Visible area of a monitor inside its framebuffer."""

    x: int
    y: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


class Framebuffer(Protocol):
    """Row-addressable BGRA framebuffer."""

    def row(self, y: int) -> bytes | bytearray | memoryview:
        """Return the full row ``y`` as BGRA bytes (4 bytes per pixel)."""
        ...


class HostSystem(Protocol):
    """Operations the control socket needs from the host."""

    name: str
    version: str

    def is_paused(self) -> bool: ...

    def set_paused(self, paused: bool) -> None: ...

    def hard_reset(self) -> None: ...

    def power_off(self) -> None: ...

    def set_mouse_capture(self, captured: bool) -> None: ...

    def mount(
        self,
        device_class: DeviceClass,
        slot: int,
        path: str,
        write_protect: bool = False,
    ) -> None: ...

    def eject(self, device_class: DeviceClass, slot: int) -> None: ...

    def device_state(self, device_class: DeviceClass, slot: int) -> SlotState: ...

    def monitor_active(self, index: int) -> bool: ...

    def blit_rect(self, index: int) -> BlitRect: ...

    def framebuffer(self, index: int) -> Framebuffer | None: ...
