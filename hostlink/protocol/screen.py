"""
Framebuffer capture for the `screenshot` and `screencrc` commands.

Pixels are BGRA, 4 bytes each. The checksum is the standard CRC-32
(reflected polynomial 0xEDB88320, initial and final XOR 0xFFFFFFFF) over the
B, G and R bytes of every pixel in row-major order; alpha is skipped.
"""

from __future__ import annotations

import zlib
from collections.abc import Iterator
from dataclasses import dataclass

from hostlink.host.base import BYTES_PER_PIXEL, BlitRect, Framebuffer


@dataclass(frozen=True, slots=True)
class Region:
    """Rectangle relative to the visible area."""

    x: int
    y: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


def clamp_region(region: Region | None, visible: BlitRect) -> Region:
    """
    Clamp a requested region to the visible area.

    A negative origin is moved to 0 (without changing the requested extent),
    then the extent is cut so the region ends inside the visible area. The
    result may be empty; callers must check `Region.is_empty`.

    Args:
        region: Requested region, or None for the whole visible area.
        visible: The monitor's visible rectangle.
    """
    if region is None:
        return Region(0, 0, visible.width, visible.height)

    x = max(region.x, 0)
    y = max(region.y, 0)
    width = region.width
    height = region.height

    if x + width > visible.width:
        width = visible.width - x
    if y + height > visible.height:
        height = visible.height - y

    return Region(x, y, width, height)


def iter_visible_rows(
    framebuffer: Framebuffer,
    visible: BlitRect,
    region: Region | None = None,
) -> Iterator[bytes]:
    """
    Yield the BGRA bytes of each row of a region, top to bottom.

    Args:
        framebuffer: Source framebuffer.
        visible: Visible rectangle inside the framebuffer.
        region: Sub-region relative to ``visible`` (already clamped), or
            None for the whole visible area.
    """
    if region is None:
        region = Region(0, 0, visible.width, visible.height)

    start = (visible.x + region.x) * BYTES_PER_PIXEL
    end = start + region.width * BYTES_PER_PIXEL
    top = visible.y + region.y

    for y in range(top, top + region.height):
        yield bytes(framebuffer.row(y)[start:end])


def screenshot_size(visible: BlitRect) -> int:
    """Byte count of a full visible-area dump."""
    return visible.width * visible.height * BYTES_PER_PIXEL


def region_crc32(framebuffer: Framebuffer, visible: BlitRect, region: Region) -> int:
    """CRC-32 over the BGR bytes of a clamped region."""
    crc = 0
    for row in iter_visible_rows(framebuffer, visible, region):
        bgr = bytearray(row)
        del bgr[BYTES_PER_PIXEL - 1 :: BYTES_PER_PIXEL]
        crc = zlib.crc32(bgr, crc)
    return crc & 0xFFFFFFFF
