"""
Client Registry - Central repository for connected control clients.

The registry tracks every connected client in connection order and is the
one structure shared by the connection handlers (which add and remove
clients) and the state poller (which broadcasts to them).
"""

import asyncio
import logging
from typing import Iterator

from hostlink.clients.connection import ClientConnection

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLIENTS = 8


class RegistryFullError(Exception):
    """Raised when a client is added to a registry at capacity."""


class ClientRegistry:
    """
    Bounded, ordered registry of connected clients.

    Clients are keyed by their connection id, so removing one never shifts
    or renumbers the others. Iteration order is registration order.

    Thread-safety: every mutation and every awaiting iteration (including
    the sends of a broadcast) happens under one asyncio lock. `abort_all()`
    never awaits, so it runs without the lock. Iteration always runs over a
    snapshot list.
    """

    def __init__(self, max_clients: int = DEFAULT_MAX_CLIENTS) -> None:
        """
        Initialize an empty client registry.

        Args:
            max_clients: Maximum number of concurrently registered clients.
        """
        self.max_clients = max_clients
        self._clients: dict[int, ClientConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, client: ClientConnection) -> None:
        """
        Register a new client.

        Args:
            client: The client connection to register.

        Raises:
            RegistryFullError: If the registry already holds max_clients.
            ValueError: If a client with the same id is registered.
        """
        async with self._lock:
            if client.id in self._clients:
                raise ValueError(f"Client {client.id} is already registered")

            if len(self._clients) >= self.max_clients:
                raise RegistryFullError(
                    f"Registry full ({len(self._clients)}/{self.max_clients} clients)"
                )

            self._clients[client.id] = client
            logger.info(
                "Client registered: %d (%d/%d)",
                client.id,
                len(self._clients),
                self.max_clients,
            )

    async def unregister(self, connection_id: int) -> ClientConnection | None:
        """
        Remove a client from the registry.

        Args:
            connection_id: The id of the client to remove.

        Returns:
            The removed client, or None if not found.
        """
        async with self._lock:
            client = self._clients.pop(connection_id, None)
            if client:
                logger.info("Client unregistered: %d", connection_id)
            return client

    async def broadcast(self, data: bytes) -> int:
        """
        Send the same bytes to every registered client, in registration order.

        A client whose write fails is closed and skipped; its connection
        handler removes it from the registry. A client that stops reading
        blocks the broadcast until its socket drains or `abort_all()` runs.

        Args:
            data: Encoded line to send.

        Returns:
            Number of clients the data was delivered to.
        """
        delivered = 0

        async with self._lock:
            for client in list(self._clients.values()):
                if not client.is_connected:
                    continue
                try:
                    await client.send(data)
                    delivered += 1
                except ConnectionError:
                    logger.debug("Broadcast to client %d failed", client.id)

        return delivered

    async def disconnect_all(self) -> None:
        """
        Disconnect all clients and clear the registry.

        This is typically called during server shutdown.
        """
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        # Disconnect outside the lock to avoid holding it during I/O
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning("Error disconnecting client %d: %s", client.id, e)

        logger.info("All clients disconnected (%d total)", len(clients))

    def abort_all(self) -> None:
        """
        Abort every client's transport without taking the lock.

        Used at shutdown: a broadcast stuck on a client that stopped reading
        holds the lock, and aborting the transports is what releases it.
        Clients stay registered; their handlers unregister them.
        """
        for client in list(self._clients.values()):
            client.abort()

    def __len__(self) -> int:
        """Return the number of connected clients."""
        return len(self._clients)

    def __contains__(self, connection_id: int) -> bool:
        """Check if a client with the given id is registered."""
        return connection_id in self._clients

    def __iter__(self) -> Iterator[int]:
        """Iterate over registered connection ids."""
        return iter(list(self._clients))

    def __bool__(self) -> bool:
        """A registry instance is always truthy, even when empty."""
        return True
