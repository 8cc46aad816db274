"""
Client connection representation for hostlink.

This module defines the ClientConnection class which represents one
connected control socket client: its stream pair, its line accumulation
buffer, and serialized writes.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from hostlink.protocol.codec import LINE_TERMINATOR, decode_line

if TYPE_CHECKING:
    from asyncio import StreamReader, StreamWriter

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 4096


class ClientError(Exception):
    """Base exception for client connection errors."""


class BufferOverflowError(ClientError):
    """A client filled its buffer without sending a line terminator."""


class ClientConnection:
    """
    Represents a connected control socket client.

    Incoming bytes accumulate in a bounded buffer until complete lines can
    be extracted. At most ``buffer_size - 1`` bytes of one unterminated line
    are held; a client that exceeds this is in violation of the protocol.

    Outgoing writes go through `send()`, which holds a per-connection lock so
    a multi-part reply is never interleaved with a broadcast line.

    Attributes:
        id: Connection id assigned by the server (unique per process).
        reader: Asyncio stream reader for this connection.
    """

    def __init__(
        self,
        connection_id: int,
        reader: "StreamReader",
        writer: "StreamWriter",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        """
        Initialize a new client connection.

        Args:
            connection_id: Stable id for registry lookups.
            reader: Asyncio stream reader for this connection.
            writer: Asyncio stream writer for this connection.
            buffer_size: Accumulation buffer capacity in bytes.
        """
        self.id = connection_id
        self.reader = reader
        self._writer = writer
        self._buffer = bytearray()
        self._buffer_size = buffer_size
        self._write_lock = asyncio.Lock()
        self._connected = True

        logger.debug("ClientConnection %d created", self.id)

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        return self._connected

    @property
    def buffered(self) -> int:
        """Number of bytes held for an unterminated line."""
        return len(self._buffer)

    @property
    def buffer_space(self) -> int:
        """How many more bytes may be read before the buffer overflows."""
        return self._buffer_size - 1 - len(self._buffer)

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """
        Append freshly read bytes to the buffer.

        Raises:
            BufferOverflowError: If the data does not fit in the buffer.
        """
        if len(data) > self.buffer_space:
            raise BufferOverflowError(
                f"client {self.id}: {len(self._buffer) + len(data)} bytes without line terminator"
            )
        self._buffer += data

    def extract_lines(self) -> list[str]:
        """
        Remove and return every complete line from the buffer.

        Lines are split on ``\\n``; a trailing ``\\r`` is dropped. Any
        unterminated remainder is moved to the start of the buffer.

        Returns:
            Decoded lines in arrival order (possibly empty).
        """
        end = self._buffer.rfind(LINE_TERMINATOR)
        if end < 0:
            return []

        complete = bytes(self._buffer[:end])
        del self._buffer[: end + 1]

        return [decode_line(raw) for raw in complete.split(LINE_TERMINATOR)]

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    async def send(self, *chunks: bytes) -> None:
        """
        Write one or more chunks back to back and wait until flushed.

        Writes to a closed connection are dropped silently.

        Raises:
            ConnectionError: If the peer went away; the connection is closed.
        """
        async with self._write_lock:
            if not self._connected:
                return

            try:
                for chunk in chunks:
                    self._writer.write(chunk)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug("Failed to send to client %d: %s", self.id, e)
                await self.close()
                raise ConnectionError(f"Client {self.id} disconnected: {e}") from e

    async def close(self) -> None:
        """Close the connection to this client."""
        if not self._connected:
            return

        self._connected = False
        logger.debug("Closing client %d", self.id)

        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass  # Already disconnected

    def abort(self) -> None:
        """
        Drop the connection at once, discarding any unsent data.

        A `send()` blocked in ``drain()`` on a peer that stopped reading
        fails with ConnectionError as soon as the transport is gone.
        """
        self._connected = False
        transport = self._writer.transport
        if transport is not None:
            transport.abort()

    def __repr__(self) -> str:
        """Return a string representation for debugging."""
        return (
            f"ClientConnection(id={self.id}, connected={self._connected}, "
            f"buffered={len(self._buffer)})"
        )
