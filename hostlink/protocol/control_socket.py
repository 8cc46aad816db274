"""
Control Socket Server for hostlink.

This module implements the Unix domain socket server that external programs
use to control the host: mount and eject media, pause, reset, capture the
screen, and receive push notifications about device activity.

Protocol Format:
    Newline-terminated text lines in both directions, see
    `hostlink.protocol.codec`. Push events start with ``!``.

Two loops run side by side while the server is up: the accept/serve loop
with one handler coroutine per connection, and the state poller. They share
the ClientRegistry.
"""

import asyncio
import contextlib
import itertools
import logging
import os

from hostlink.clients.connection import BufferOverflowError, ClientConnection
from hostlink.clients.registry import ClientRegistry, RegistryFullError
from hostlink.config import ControlConfig
from hostlink.devices.poller import StatePoller
from hostlink.host.base import HostSystem
from hostlink.protocol.codec import format_err
from hostlink.protocol.dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

# sizeof(sockaddr_un.sun_path) on Linux, minus the terminating NUL
MAX_SOCKET_PATH_BYTES = 107

REJECT_MESSAGE = "too many clients"


class ControlSocketServer:
    """
    Unix socket server for host control clients.

    The server is fully asynchronous: asyncio multiplexes the listener and
    every client socket, and each connection gets its own handler
    coroutine rather than a blocking thread.

    Attributes:
        host: The host system commands act on.
        config: Loaded configuration.
        registry: Registry of connected clients.
        dispatcher: Command dispatcher.
        poller: LED/media change broadcaster.
    """

    def __init__(
        self,
        host: HostSystem,
        config: ControlConfig | None = None,
        registry: ClientRegistry | None = None,
    ) -> None:
        """
        Initialize the control socket server.

        Args:
            host: Host system to control.
            config: Configuration (defaults if not provided).
            registry: Client registry (created if not provided).
        """
        self.host = host
        self.config = config or ControlConfig()
        self.registry = (
            registry if registry is not None else ClientRegistry(self.config.server.max_clients)
        )
        self.dispatcher = CommandDispatcher(host, self.registry, self.config)
        self.poller = StatePoller(
            host,
            self.registry,
            self.config.devices,
            interval=self.config.server.poll_interval,
            is_running=lambda: self._running,
        )

        self.path: str | None = None
        self._server: asyncio.AbstractServer | None = None
        self._running = False
        self._serve_task: asyncio.Task[None] | None = None
        self._poller_task: asyncio.Task[None] | None = None
        self._client_tasks: dict[int, asyncio.Task[None]] = {}
        self._connection_ids = itertools.count(1)

    @property
    def is_running(self) -> bool:
        """Check if the server is currently accepting connections."""
        return self._running

    async def start(self, path: str) -> bool:
        """
        Bind the socket at ``path`` and start serving.

        A stale socket file at ``path`` is removed first. On failure nothing
        is left running and the error is logged.

        Args:
            path: Filesystem path of the Unix socket.

        Returns:
            True if the server is listening, False if startup failed.
        """
        if self._running:
            logger.warning("Control socket already running on %s", self.path)
            return True

        if len(os.fsencode(path)) > MAX_SOCKET_PATH_BYTES:
            logger.error("Control socket: path too long: %s", path)
            return False

        # Remove stale socket file if it exists
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=path,
                backlog=self.config.server.listen_backlog,
                start_serving=False,
            )
        except OSError as e:
            logger.error("Control socket: failed to bind %s: %s", path, e)
            return False

        try:
            self.poller.initialize()
        except Exception as e:
            logger.error("Control socket: failed to read initial device state: %s", e)
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)
            return False

        self.path = path
        self._running = True

        # Listen before returning so a client may connect right away
        await self._server.start_serving()

        self._serve_task = asyncio.create_task(self._serve(), name="hostlink-serve")
        self._poller_task = asyncio.create_task(self.poller.run(), name="hostlink-poller")

        logger.info("Control socket: listening on %s", path)
        return True

    async def stop(self) -> None:
        """
        Stop serving, disconnect every client, and remove the socket file.

        Blocks until both the serve loop and the poller have finished.
        """
        if not self._running:
            return

        logger.info("Stopping control socket...")
        self._running = False

        # Stop accepting new connections
        if self._server:
            self._server.close()

        # Abort transports first: a broadcast blocked on a stalled client
        # holds the registry lock that every handler needs to unregister
        self.registry.abort_all()

        # Cancel all client handler tasks, except the one calling stop()
        current = asyncio.current_task()
        pending = [task for task in self._client_tasks.values() if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._client_tasks.clear()

        await self.registry.disconnect_all()

        for task in (self._serve_task, self._poller_task):
            if task is None or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._serve_task = None
        self._poller_task = None

        if self._server:
            await self._server.wait_closed()
            self._server = None

        if self.path:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.path)
            self.path = None

        logger.info("Control socket stopped")

    async def broadcast(self, data: bytes) -> int:
        """Send an encoded line to every connected client."""
        return await self.registry.broadcast(data)

    async def _serve(self) -> None:
        """Accept loop; runs until stop() cancels it."""
        assert self._server is not None
        if not self._server.is_serving():
            # Closed by stop() before this task got to run
            return
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            if self._running:
                raise
        logger.debug("Serve loop finished")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Handle a new incoming connection.

        This is called by asyncio for each accepted connection. A connection
        arriving while the registry is full gets one rejection line and is
        closed without being registered.
        """
        client = ClientConnection(
            next(self._connection_ids),
            reader,
            writer,
            buffer_size=self.config.server.buffer_size,
        )

        try:
            await self.registry.register(client)
        except RegistryFullError as e:
            logger.warning("Rejecting client %d: %s", client.id, e)
            with contextlib.suppress(ConnectionError):
                await client.send(format_err(REJECT_MESSAGE))
            await client.close()
            return

        logger.info("New connection: client %d", client.id)
        if task := asyncio.current_task():
            self._client_tasks[client.id] = task

        try:
            await self._read_loop(client)
        except asyncio.CancelledError:
            logger.debug("Connection handler cancelled for client %d", client.id)
        except BufferOverflowError as e:
            logger.warning("Protocol violation, dropping client: %s", e)
        except (ConnectionError, OSError) as e:
            logger.debug("Client %d connection error: %s", client.id, e)
        except Exception as e:
            logger.exception("Error handling client %d: %s", client.id, e)
        finally:
            self._client_tasks.pop(client.id, None)
            await self.registry.unregister(client.id)
            await client.close()
            logger.info("Connection closed: client %d", client.id)

    async def _read_loop(self, client: ClientConnection) -> None:
        """
        Read, split and dispatch lines until the client goes away.

        Each read waits at most `select_timeout` seconds so the running flag
        is re-checked even when the client is silent. Lines are dispatched
        strictly in arrival order; after each one the loop stops if the
        command closed this client or stopped the server.

        Raises:
            BufferOverflowError: If the buffer fills without a terminator.
        """
        timeout = self.config.server.select_timeout

        while self._running and client.is_connected:
            space = client.buffer_space
            if space <= 0:
                raise BufferOverflowError(
                    f"client {client.id}: {client.buffered} bytes without line terminator"
                )

            try:
                data = await asyncio.wait_for(client.reader.read(space), timeout=timeout)
            except asyncio.TimeoutError:
                continue

            if not data:
                logger.debug("Client %d closed the connection", client.id)
                return

            client.feed(data)

            for line in client.extract_lines():
                await self.dispatcher.handle(client, line)
                if not client.is_connected or not self._running:
                    return
