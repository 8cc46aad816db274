"""
Device state tracking for hostlink.

This package models the per-slot activity and media state of the host's
devices and remembers what was last announced to clients. The poller lives
in `hostlink.devices.poller`.
"""

from hostlink.devices.state import (
    DeviceClass,
    DeviceStateStore,
    LedState,
    MediaState,
    SlotState,
)

__all__ = [
    "DeviceClass",
    "DeviceStateStore",
    "LedState",
    "MediaState",
    "SlotState",
]
