"""
State poller and broadcaster.

Runs next to the connection handlers for the lifetime of the server. Every
`poll_interval` seconds it reads the live state of every polled slot,
diffs it against the DeviceStateStore, and broadcasts each transition as a
push event to all registered clients.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from hostlink.config import DeviceLayout
from hostlink.devices.state import DeviceStateStore, PushEvent, iter_slots
from hostlink.protocol.codec import format_event

if TYPE_CHECKING:
    from hostlink.clients.registry import ClientRegistry
    from hostlink.host.base import HostSystem

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class StatePoller:
    """
    Edge-triggered LED/media change broadcaster.

    The poller is the only writer of its DeviceStateStore. It reads the
    client registry only through `ClientRegistry.broadcast()`, which takes
    the registry lock.

    Args:
        host: Host system to read device state from.
        registry: Clients to broadcast to.
        layout: Slot counts per device class.
        store: Snapshot store (created if not provided).
        interval: Seconds between ticks.
        is_running: Shared running flag; the loop exits once it returns False.
    """

    def __init__(
        self,
        host: "HostSystem",
        registry: "ClientRegistry",
        layout: DeviceLayout | None = None,
        *,
        store: DeviceStateStore | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        is_running: Callable[[], bool] | None = None,
    ) -> None:
        self.host = host
        self.registry = registry
        self.layout = layout or DeviceLayout()
        self.store = store if store is not None else DeviceStateStore()
        self.interval = interval
        self._is_running = is_running or (lambda: True)

    def initialize(self) -> None:
        """Seed the snapshot store from the live host state."""
        self.store.initialize(self.host, self.layout)

    def collect_changes(self) -> list[PushEvent]:
        """
        Diff every polled slot against the store and record the changes.

        Returns:
            Events in device class / slot order.
        """
        events: list[PushEvent] = []
        for device_class, slot in iter_slots(self.layout):
            current = self.host.device_state(device_class, slot)
            events.extend(self.store.update(device_class, slot, current))
        return events

    async def tick(self) -> int:
        """
        Run one poll cycle.

        Nothing is compared while no client is connected; the store keeps
        the last broadcast state, so the first tick after a client connects
        reports whatever changed in the meantime.

        Returns:
            Number of events broadcast.
        """
        if len(self.registry) == 0:
            return 0

        events = self.collect_changes()
        for event in events:
            await self.registry.broadcast(format_event(event))

        if events:
            logger.debug("Broadcast %d device events", len(events))
        return len(events)

    async def run(self) -> None:
        """Poll until the shared running flag is cleared."""
        logger.debug("State poller started (interval %.3fs)", self.interval)

        while self._is_running():
            await asyncio.sleep(self.interval)
            if not self._is_running():
                break
            try:
                await self.tick()
            except Exception as e:
                logger.exception("State poll failed: %s", e)

        logger.debug("State poller stopped")
