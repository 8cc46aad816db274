"""
Tests for client connections and the client registry.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from hostlink.clients.connection import BufferOverflowError, ClientConnection
from hostlink.clients.registry import ClientRegistry, RegistryFullError

# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


def make_writer() -> MagicMock:
    """Create a mock StreamWriter."""
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    writer.wait_closed = AsyncMock()
    return writer


def make_client(connection_id: int = 1, buffer_size: int = 4096) -> ClientConnection:
    reader = AsyncMock(spec=asyncio.StreamReader)
    return ClientConnection(connection_id, reader, make_writer(), buffer_size=buffer_size)


def make_stalled_client(connection_id: int = 1) -> ClientConnection:
    """Client whose drain() blocks until its transport is aborted."""
    client = make_client(connection_id)
    lost: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    async def blocked_drain() -> None:
        await lost

    client._writer.drain.side_effect = blocked_drain
    client._writer.transport.abort.side_effect = lambda: lost.set_exception(
        ConnectionResetError("Connection lost")
    )
    return client


def written(client: ClientConnection) -> bytes:
    """Everything written to a client's mock writer."""
    return b"".join(call.args[0] for call in client._writer.write.call_args_list)


@pytest.fixture
def registry() -> ClientRegistry:
    return ClientRegistry(max_clients=3)


# -----------------------------------------------------------------------------
# ClientConnection
# -----------------------------------------------------------------------------


class TestLineBuffer:
    """Tests for accumulating and splitting input."""

    def test_single_line(self) -> None:
        client = make_client()
        client.feed(b"status\n")

        assert client.extract_lines() == ["status"]
        assert client.buffered == 0

    def test_partial_line_kept(self) -> None:
        """Bytes after the last newline wait for the rest of the line."""
        client = make_client()
        client.feed(b"vers")

        assert client.extract_lines() == []
        assert client.buffered == 4

        client.feed(b"ion\nhelp")

        assert client.extract_lines() == ["version"]
        assert client.buffered == 4

    def test_many_lines_in_order(self) -> None:
        client = make_client()
        client.feed(b"pause\r\nstatus\n\nversion\n")

        assert client.extract_lines() == ["pause", "status", "", "version"]

    def test_buffer_space(self) -> None:
        """One byte of capacity is always held back."""
        client = make_client(buffer_size=16)

        assert client.buffer_space == 15
        client.feed(b"0123456789")
        assert client.buffer_space == 5

    def test_overflow(self) -> None:
        client = make_client(buffer_size=8)

        with pytest.raises(BufferOverflowError):
            client.feed(b"12345678")

    def test_space_recovers_after_extract(self) -> None:
        client = make_client(buffer_size=8)
        client.feed(b"abc\nde")
        client.extract_lines()

        assert client.buffer_space == 8 - 1 - 2


class TestClientSend:
    """Tests for writing to a client."""

    async def test_send_chunks_then_drain(self) -> None:
        client = make_client()

        await client.send(b"OK 1 1 4\n", b"\x01\x02\x03\x04")

        assert written(client) == b"OK 1 1 4\n\x01\x02\x03\x04"
        client._writer.drain.assert_awaited_once()

    async def test_send_after_close_is_dropped(self) -> None:
        client = make_client()
        await client.close()

        await client.send(b"OK\n")

        assert written(client) == b""

    async def test_send_failure_closes(self) -> None:
        """A write error closes the connection and raises ConnectionError."""
        client = make_client()
        client._writer.drain.side_effect = BrokenPipeError()

        with pytest.raises(ConnectionError):
            await client.send(b"OK\n")

        assert not client.is_connected
        client._writer.close.assert_called_once()

    async def test_abort_releases_blocked_send(self) -> None:
        """Aborting a client makes a send stuck in drain() fail."""
        client = make_stalled_client()

        send = asyncio.create_task(client.send(b"!led fdd 0 read\n"))
        await asyncio.sleep(0)
        assert not send.done()

        client.abort()

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(send, timeout=1)
        assert not client.is_connected

    async def test_close_after_abort(self) -> None:
        client = make_client()

        client.abort()
        await client.close()

        client._writer.transport.abort.assert_called_once()
        client._writer.close.assert_not_called()

    async def test_close_twice(self) -> None:
        client = make_client()

        await client.close()
        await client.close()

        client._writer.close.assert_called_once()


# -----------------------------------------------------------------------------
# ClientRegistry
# -----------------------------------------------------------------------------


class TestClientRegistry:
    """Tests for registration, capacity and ordering."""

    async def test_register_and_unregister(self, registry: ClientRegistry) -> None:
        client = make_client(7)

        await registry.register(client)
        assert 7 in registry
        assert len(registry) == 1

        removed = await registry.unregister(7)
        assert removed is client
        assert len(registry) == 0

    async def test_unregister_unknown(self, registry: ClientRegistry) -> None:
        assert await registry.unregister(42) is None

    async def test_duplicate_id_rejected(self, registry: ClientRegistry) -> None:
        await registry.register(make_client(1))

        with pytest.raises(ValueError):
            await registry.register(make_client(1))

    async def test_capacity(self, registry: ClientRegistry) -> None:
        """The registry refuses clients beyond max_clients and stays unchanged."""
        for i in range(3):
            await registry.register(make_client(i))
        assert len(registry) == registry.max_clients

        with pytest.raises(RegistryFullError):
            await registry.register(make_client(99))

        assert len(registry) == 3
        assert 99 not in registry

    async def test_insertion_order_survives_removal(self, registry: ClientRegistry) -> None:
        for i in (5, 2, 9):
            await registry.register(make_client(i))

        await registry.unregister(2)
        await registry.register(make_client(4))

        assert list(registry) == [5, 9, 4]

    async def test_always_truthy(self, registry: ClientRegistry) -> None:
        assert registry


class TestBroadcast:
    """Tests for ClientRegistry.broadcast()."""

    async def test_reaches_every_client(self, registry: ClientRegistry) -> None:
        clients = [make_client(i) for i in range(3)]
        for client in clients:
            await registry.register(client)

        delivered = await registry.broadcast(b"!paused 1\n")

        assert delivered == 3
        assert all(written(client) == b"!paused 1\n" for client in clients)

    async def test_registration_order(self, registry: ClientRegistry) -> None:
        order: list[int] = []
        clients = [make_client(i) for i in (3, 1, 2)]
        for client in clients:
            client._writer.write.side_effect = lambda data, cid=client.id: order.append(cid)
            await registry.register(client)

        await registry.broadcast(b"!led fdd 0 read\n")

        assert order == [3, 1, 2]

    async def test_failed_client_skipped(self, registry: ClientRegistry) -> None:
        """One broken client does not stop delivery to the others."""
        broken = make_client(1)
        broken._writer.drain.side_effect = ConnectionResetError()
        healthy = make_client(2)
        await registry.register(broken)
        await registry.register(healthy)

        delivered = await registry.broadcast(b"!paused 0\n")

        assert delivered == 1
        assert not broken.is_connected
        assert written(healthy) == b"!paused 0\n"

    async def test_closed_client_skipped(self, registry: ClientRegistry) -> None:
        client = make_client(1)
        await registry.register(client)
        await client.close()

        assert await registry.broadcast(b"!paused 0\n") == 0

    async def test_removal_waits_for_broadcast(self, registry: ClientRegistry) -> None:
        """Unregister during a broadcast is serialized behind it."""
        release = asyncio.Event()
        slow = make_client(1)

        async def slow_drain() -> None:
            await release.wait()

        slow._writer.drain.side_effect = slow_drain
        other = make_client(2)
        await registry.register(slow)
        await registry.register(other)

        broadcast = asyncio.create_task(registry.broadcast(b"!paused 1\n"))
        await asyncio.sleep(0)
        removal = asyncio.create_task(registry.unregister(2))
        await asyncio.sleep(0)

        assert not removal.done()

        release.set()
        assert await broadcast == 2
        assert await removal is other
        assert written(other) == b"!paused 1\n"

    async def test_abort_all_unblocks_stalled_broadcast(self, registry: ClientRegistry) -> None:
        """A broadcast stuck on a client that stopped reading ends on abort_all()."""
        stalled = make_stalled_client(1)
        other = make_client(2)
        await registry.register(stalled)
        await registry.register(other)

        broadcast = asyncio.create_task(registry.broadcast(b"!paused 1\n"))
        await asyncio.sleep(0)
        removal = asyncio.create_task(registry.unregister(1))
        await asyncio.sleep(0)
        assert not removal.done()

        registry.abort_all()

        assert await asyncio.wait_for(broadcast, timeout=1) == 0
        assert await asyncio.wait_for(removal, timeout=1) is stalled
        assert not other.is_connected
        assert 2 in registry

    async def test_disconnect_all(self, registry: ClientRegistry) -> None:
        clients = [make_client(i) for i in range(2)]
        for client in clients:
            await registry.register(client)

        await registry.disconnect_all()

        assert len(registry) == 0
        assert not any(client.is_connected for client in clients)
