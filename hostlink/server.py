"""
hostlink - Main Server Module

This module contains the HostLinkService class that owns the control socket
server and the host it controls, and manages the application lifecycle.
"""

import asyncio
import logging
import signal

from hostlink.config import ControlConfig
from hostlink.host.base import HostSystem
from hostlink.host.simulated import SimulatedHost
from hostlink.protocol.control_socket import ControlSocketServer

logger = logging.getLogger(__name__)


class HostLinkService:
    """
    Owns one control socket and its lifecycle.

    All state that must survive between ticks (the client registry, the
    last-broadcast device snapshot, the running flag) lives on objects owned
    by this service, so it can be created, run and torn down explicitly.

    The service manages:
    - The control socket server (accept loop + per-client handlers)
    - The state poller broadcasting LED/media changes
    - Shutdown on SIGINT/SIGTERM or on the `exit` command

    Args:
        socket_path: Filesystem path of the Unix socket.
        config: Loaded configuration (defaults if not provided).
        host: Host system to control. A SimulatedHost sized from
            ``config.devices`` is created if not provided.
    """

    def __init__(
        self,
        socket_path: str,
        config: ControlConfig | None = None,
        host: HostSystem | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.config = config or ControlConfig()

        if host is None:
            host = SimulatedHost(self.config.devices, on_power_off=self.request_shutdown)
        self.host = host

        self.control_socket = ControlSocketServer(host, self.config)

        # Server state
        self._running = False
        self._shutdown_event: asyncio.Event | None = None

    async def init(self) -> bool:
        """
        Create and publish the listener.

        Returns:
            True on success, False if the socket could not be set up.
        """
        if self._running:
            return True

        logger.info("Starting hostlink control socket on %s", self.socket_path)
        self._shutdown_event = asyncio.Event()

        if not await self.control_socket.start(self.socket_path):
            return False

        self._running = True
        return True

    async def close(self) -> None:
        """Tear everything down and remove the socket file."""
        if not self._running:
            return

        logger.info("Stopping hostlink...")
        self._running = False

        await self.control_socket.stop()

        if self._shutdown_event:
            self._shutdown_event.set()

        logger.info("hostlink stopped")

    def request_shutdown(self) -> None:
        """Ask `run()` to stop; safe to call from synchronous host callbacks."""
        if self._shutdown_event:
            self._shutdown_event.set()

    async def run(self) -> bool:
        """
        Run the service until shutdown is requested.

        This method starts the control socket and waits for a shutdown
        signal (SIGINT or SIGTERM) or an `exit` command.

        Returns:
            False if startup failed, True after a clean shutdown.
        """
        if not await self.init():
            return False

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Received shutdown signal")
            self.request_shutdown()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, handle_signal)
            except NotImplementedError:
                # Signal handlers not supported on Windows
                pass

        # Wait for shutdown
        if self._shutdown_event:
            await self._shutdown_event.wait()

        await self.close()
        return True

    @property
    def is_running(self) -> bool:
        """Check if the service is currently running."""
        return self._running

    @property
    def connected_clients(self) -> int:
        """Get the number of currently connected clients."""
        return len(self.control_socket.registry)
