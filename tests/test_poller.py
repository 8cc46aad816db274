"""
Tests for the LED/media state poller.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from hostlink.clients.connection import ClientConnection
from hostlink.clients.registry import ClientRegistry
from hostlink.config import DeviceLayout
from hostlink.devices.poller import StatePoller
from hostlink.devices.state import DeviceClass, LedEvent, LedState, MediaEvent, MediaState
from hostlink.host.simulated import SimulatedHost


def make_client(connection_id: int) -> ClientConnection:
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    writer.wait_closed = AsyncMock()
    return ClientConnection(connection_id, AsyncMock(spec=asyncio.StreamReader), writer)


def lines(client: ClientConnection) -> list[str]:
    data = b"".join(call.args[0] for call in client._writer.write.call_args_list)
    return data.decode().splitlines()


@pytest.fixture
def layout() -> DeviceLayout:
    return DeviceLayout(fdd=2, cdrom=1, hdd=2, rdisk=0, mo=0, net=1, cartridge=1, monitors=1)


@pytest.fixture
def host(layout: DeviceLayout) -> SimulatedHost:
    return SimulatedHost(layout)


@pytest.fixture
def registry() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def poller(host: SimulatedHost, registry: ClientRegistry, layout: DeviceLayout) -> StatePoller:
    poller = StatePoller(host, registry, layout, interval=0.001)
    poller.initialize()
    return poller


class TestCollectChanges:
    """Tests for StatePoller.collect_changes()."""

    def test_quiet_host(self, poller: StatePoller) -> None:
        assert poller.collect_changes() == []

    def test_events_in_slot_order(self, poller: StatePoller, host: SimulatedHost) -> None:
        host.set_activity(DeviceClass.NET, 0, active=True)
        host.mount(DeviceClass.CDROM, 0, "disc.iso")
        host.set_activity(DeviceClass.FDD, 1, write_active=True)

        assert poller.collect_changes() == [
            LedEvent(DeviceClass.FDD, 1, LedState.WRITE),
            MediaEvent(DeviceClass.CDROM, 0, MediaState.INSERTED),
            LedEvent(DeviceClass.NET, 0, LedState.READ),
        ]

    def test_cartridge_not_polled(self, poller: StatePoller, host: SimulatedHost) -> None:
        host.mount(DeviceClass.CARTRIDGE, 0, "game.a8")

        assert poller.collect_changes() == []

    def test_edge_only(self, poller: StatePoller, host: SimulatedHost) -> None:
        host.set_activity(DeviceClass.HDD, 0, active=True)

        assert len(poller.collect_changes()) == 1
        assert poller.collect_changes() == []

        host.set_activity(DeviceClass.HDD, 0)

        assert poller.collect_changes() == [LedEvent(DeviceClass.HDD, 0, LedState.IDLE)]


class TestTick:
    """Tests for StatePoller.tick()."""

    async def test_no_clients_no_diff(self, poller: StatePoller, host: SimulatedHost) -> None:
        """Without clients nothing is compared and the store keeps old state."""
        host.set_activity(DeviceClass.HDD, 1, active=True)

        assert await poller.tick() == 0
        assert poller.store.get(DeviceClass.HDD, 1).led == LedState.IDLE

    async def test_change_seen_after_client_connects(
        self, poller: StatePoller, host: SimulatedHost, registry: ClientRegistry
    ) -> None:
        host.set_activity(DeviceClass.HDD, 1, active=True)
        await poller.tick()

        client = make_client(1)
        await registry.register(client)

        assert await poller.tick() == 1
        assert lines(client) == ["!led hdd 1 read"]

    async def test_broadcast_once_per_edge(
        self, poller: StatePoller, host: SimulatedHost, registry: ClientRegistry
    ) -> None:
        clients = [make_client(1), make_client(2)]
        for client in clients:
            await registry.register(client)

        host.mount(DeviceClass.FDD, 0, "disk.img")
        await poller.tick()
        await poller.tick()
        host.eject(DeviceClass.FDD, 0)
        await poller.tick()

        for client in clients:
            assert lines(client) == ["!media fdd 0 inserted", "!media fdd 0 ejected"]

    async def test_led_then_media(self, poller: StatePoller, host: SimulatedHost, registry: ClientRegistry) -> None:
        client = make_client(1)
        await registry.register(client)

        host.set_activity(DeviceClass.FDD, 0, active=True)
        host.mount(DeviceClass.FDD, 0, "disk.img")
        await poller.tick()

        assert lines(client) == ["!led fdd 0 read", "!media fdd 0 inserted"]


class TestRun:
    """Tests for the polling loop."""

    async def test_stops_when_flag_cleared(self, host: SimulatedHost, registry: ClientRegistry) -> None:
        running = True
        poller = StatePoller(host, registry, host.layout, interval=0.001, is_running=lambda: running)
        poller.initialize()

        task = asyncio.create_task(poller.run())
        await asyncio.sleep(0.01)
        running = False

        await asyncio.wait_for(task, timeout=1)

    async def test_failure_does_not_stop_loop(self, host: SimulatedHost, registry: ClientRegistry) -> None:
        """A failing tick is logged and polling continues."""
        calls = 0
        done = asyncio.Event()

        poller = StatePoller(host, registry, host.layout, interval=0.001, is_running=lambda: not done.is_set())

        async def flaky_tick() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("device read failed")
            done.set()
            return 0

        poller.tick = flaky_tick  # type: ignore[method-assign]

        await asyncio.wait_for(poller.run(), timeout=1)

        assert calls == 2
