"""
Client management for hostlink.

This package handles connected control socket clients and the bounded
registry the server and the state poller share.
"""

from hostlink.clients.connection import BufferOverflowError, ClientConnection
from hostlink.clients.registry import ClientRegistry, RegistryFullError

__all__ = [
    "BufferOverflowError",
    "ClientConnection",
    "ClientRegistry",
    "RegistryFullError",
]
