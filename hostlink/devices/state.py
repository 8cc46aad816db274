"""
Device state model and the last-broadcast snapshot store.

The store remembers, per device class and slot, the state that was last
announced to clients. The poller feeds it the live state on every tick and
gets back only the transitions, so unchanged values are never re-broadcast.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hostlink.config import DeviceLayout
    from hostlink.host.base import HostSystem

logger = logging.getLogger(__name__)


class DeviceClass(Enum):
    """Device classes addressable over the control socket."""

    FDD = "fdd"
    CDROM = "cdrom"
    HDD = "hdd"
    RDISK = "rdisk"
    MO = "mo"
    NET = "net"
    CARTRIDGE = "cartridge"

    @property
    def has_media(self) -> bool:
        """Whether slots of this class hold removable media."""
        return self in _MEDIA_CLASSES

    @property
    def is_polled(self) -> bool:
        """Whether this class is reported by `status` and the poller."""
        return self is not DeviceClass.CARTRIDGE


_MEDIA_CLASSES = frozenset(
    {
        DeviceClass.FDD,
        DeviceClass.CDROM,
        DeviceClass.RDISK,
        DeviceClass.MO,
        DeviceClass.CARTRIDGE,
    }
)

# Reporting order for `status` and for each poll tick.
POLLED_CLASSES: tuple[DeviceClass, ...] = (
    DeviceClass.FDD,
    DeviceClass.CDROM,
    DeviceClass.HDD,
    DeviceClass.RDISK,
    DeviceClass.MO,
    DeviceClass.NET,
)


class LedState(Enum):
    """Activity indicator shown for a slot."""

    IDLE = "idle"
    READ = "read"
    WRITE = "write"


class MediaState(Enum):
    """Media presence shown for a slot."""

    INSERTED = "inserted"
    EJECTED = "ejected"


@dataclass(frozen=True, slots=True)
class SlotState:
    """Observed state of one device slot."""

    active: bool = False
    write_active: bool = False
    empty: bool = True

    @property
    def led(self) -> LedState:
        """Tri-state LED: write wins over read, read over idle."""
        if self.write_active:
            return LedState.WRITE
        if self.active:
            return LedState.READ
        return LedState.IDLE

    @property
    def media(self) -> MediaState:
        return MediaState.EJECTED if self.empty else MediaState.INSERTED


@dataclass(frozen=True, slots=True)
class LedEvent:
    """`!led <class> <id> <idle|read|write>` push event."""

    device_class: DeviceClass
    slot: int
    state: LedState


@dataclass(frozen=True, slots=True)
class MediaEvent:
    """`!media <class> <id> <inserted|ejected>` push event."""

    device_class: DeviceClass
    slot: int
    state: MediaState


@dataclass(frozen=True, slots=True)
class PausedEvent:
    """`!paused <0|1>` push event."""

    paused: bool


PushEvent = LedEvent | MediaEvent | PausedEvent


def iter_slots(layout: "DeviceLayout") -> Iterator[tuple[DeviceClass, int]]:
    """Yield every polled (device_class, slot) pair in reporting order."""
    for device_class in POLLED_CLASSES:
        for slot in range(layout.slots(device_class)):
            yield device_class, slot


def snapshot_events(device_class: DeviceClass, slot: int, state: SlotState) -> list[PushEvent]:
    """
    Describe a slot's full current state as push events.

    Used by `status`: the LED line always, the media line only for
    media-bearing classes.
    """
    events: list[PushEvent] = [LedEvent(device_class, slot, state.led)]
    if device_class.has_media:
        events.append(MediaEvent(device_class, slot, state.media))
    return events


class DeviceStateStore:
    """
    Last-broadcast state per device slot.

    Only the state poller writes to the store, so it carries no lock of its
    own. Entries are created by `initialize()` and changed only when
    `update()` detects a transition.
    """

    def __init__(self) -> None:
        self._states: dict[tuple[DeviceClass, int], SlotState] = {}

    def initialize(self, host: "HostSystem", layout: "DeviceLayout") -> None:
        """
        Seed the store from the live host state.

        Args:
            host: Host system to query.
            layout: Slot counts per device class.
        """
        self._states.clear()
        for device_class, slot in iter_slots(layout):
            self._states[(device_class, slot)] = host.device_state(device_class, slot)
        logger.debug("Device state store initialized with %d slots", len(self._states))

    def get(self, device_class: DeviceClass, slot: int) -> SlotState | None:
        """Return the last broadcast state for a slot, if known."""
        return self._states.get((device_class, slot))

    def update(self, device_class: DeviceClass, slot: int, current: SlotState) -> list[PushEvent]:
        """
        Compare a slot's live state with the last broadcast one and record it.

        The comparison and the update happen together: the returned events
        are exactly the transitions that now count as broadcast.

        Args:
            device_class: Class of the slot.
            slot: Slot index.
            current: Live state just read from the host.

        Returns:
            LED event first (if activity changed), then media event (if
            presence changed, media classes only). Empty if nothing changed.
        """
        key = (device_class, slot)
        previous = self._states.get(key)

        if previous is None:
            # Slot not seen at startup; adopt silently
            self._states[key] = current
            return []

        events: list[PushEvent] = []
        active = previous.active
        write_active = previous.write_active
        empty = previous.empty

        if current.active != active or current.write_active != write_active:
            events.append(LedEvent(device_class, slot, current.led))
            active = current.active
            write_active = current.write_active

        if device_class.has_media and current.empty != empty:
            events.append(MediaEvent(device_class, slot, current.media))
            empty = current.empty

        if events:
            self._states[key] = SlotState(active=active, write_active=write_active, empty=empty)

        return events

    def __len__(self) -> int:
        return len(self._states)
