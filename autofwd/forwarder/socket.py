# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""socat-like forwarding between TCP and Unix domain sockets.

Every accepted source connection is paired with a fresh connection to the
target and relayed by two copy tasks, one per direction. When either
direction ends both connections are closed, which ends the other one.
"""

from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass
from typing import Literal, Optional, Set, Tuple

from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

BUFFER_SIZE = 16 * 1024

SocketType = Literal["tcp", "unix"]

# Raised by reads/writes on a connection that the other relay direction or
# the peer already closed.
BENIGN_CLOSE_ERRORS = (ConnectionError, asyncio.IncompleteReadError, OSError)


@dataclass
class SocketForwardingOptions:
    source_type: SocketType
    source_address: str
    target_type: SocketType
    target_address: str
    source_port: Optional[int] = None
    target_port: Optional[int] = None


def _endpoint(kind: str, address: str, port: Optional[int]) -> str:
    if kind == "unix":
        return f"unix://{address}"
    return f"tcp://{address}:{port}"


class SocketForwarder:
    """Accepts on the source endpoint and splices each connection to the target."""

    def __init__(self, options: SocketForwardingOptions):
        self.options = options
        self._server: Optional[asyncio.AbstractServer] = None
        self._relays: Set[asyncio.Task] = set()

    def forwarding_info(self) -> str:
        o = self.options
        return (
            f"{_endpoint(o.source_type, o.source_address, o.source_port)} -> "
            f"{_endpoint(o.target_type, o.target_address, o.target_port)} "
            f"on {socket.gethostname()}"
        )

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def active_relays(self) -> int:
        return len(self._relays)

    @property
    def bound_port(self) -> Optional[int]:
        """Actual TCP port of the listener (differs from source_port when it is 0)."""
        if self._server is None or self.options.source_type != "tcp":
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        """Bind the source endpoint. A second call while running is a no-op."""
        if self._server is not None:
            return
        logger.debug(f"[Forwarder] Starting {self.forwarding_info()}")

        o = self.options
        if o.source_type == "unix":
            self._remove_socket_file()
            self._server = await asyncio.start_unix_server(self._on_accept, path=o.source_address)
        else:
            if o.source_port is None:
                raise ValueError("source_port is required for tcp sources")
            self._server = await asyncio.start_server(
                self._on_accept, host=o.source_address, port=o.source_port
            )

        logger.debug(f"[Forwarder] Started {self.forwarding_info()}")

    async def stop(self) -> None:
        """Close the listener and wait for in-flight relays to finish.

        Existing connections are not cut; this returns once their peers close.
        """
        server, self._server = self._server, None
        if server is None:
            return

        server.close()
        await self._drain_relays()
        await server.wait_closed()
        # Connections accepted while closing are dropped by their handler
        await self._drain_relays()

        if self.options.source_type == "unix":
            self._remove_socket_file()
        logger.debug(f"[Forwarder] Stopped {self.forwarding_info()}")

    async def _drain_relays(self) -> None:
        while self._relays:
            await asyncio.gather(*list(self._relays), return_exceptions=True)

    def _remove_socket_file(self) -> None:
        try:
            os.unlink(self.options.source_address)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.options.source_address}: {e}")

    async def _open_target(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        o = self.options
        if o.target_type == "unix":
            return await asyncio.open_unix_connection(path=o.target_address)
        # Avoid resolving localhost to ::1 when the target only listens on IPv4
        host = "127.0.0.1" if o.target_address == "localhost" else o.target_address
        return await asyncio.open_connection(host=host, port=o.target_port)

    def _on_accept(
        self, source_reader: asyncio.StreamReader, source_writer: asyncio.StreamWriter
    ) -> None:
        # A plain callback runs inside connection_made, so the relay is
        # tracked before stop() can look at _relays.
        relay = asyncio.get_running_loop().create_task(
            self._handle_connection(source_reader, source_writer)
        )
        self._relays.add(relay)
        relay.add_done_callback(self._relays.discard)

    async def _handle_connection(
        self, source_reader: asyncio.StreamReader, source_writer: asyncio.StreamWriter
    ) -> None:
        peer = source_writer.get_extra_info("peername")
        if self._server is None:
            logger.debug(f"[Forwarder] Stopping, dropping connection from {peer}")
            source_writer.close()
            return
        logger.debug(f"[Forwarder] New connection from {peer} {self.forwarding_info()}")

        try:
            target_reader, target_writer = await self._open_target()
        except OSError as e:
            logger.error("Failed to connect to target", exc=e)
            source_writer.close()
            return

        await self._relay(source_reader, source_writer, target_reader, target_writer)

    async def _relay(
        self,
        source_reader: asyncio.StreamReader,
        source_writer: asyncio.StreamWriter,
        target_reader: asyncio.StreamReader,
        target_writer: asyncio.StreamWriter,
    ) -> None:
        writers = (source_writer, target_writer)
        upstream = asyncio.create_task(self._pipe(source_reader, target_writer, writers, "1->2"))
        downstream = asyncio.create_task(self._pipe(target_reader, source_writer, writers, "2->1"))
        try:
            await asyncio.gather(upstream, downstream)
        finally:
            self._close_all(writers)

    async def _pipe(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        writers: Tuple[asyncio.StreamWriter, ...],
        direction: str,
    ) -> None:
        try:
            while True:
                data = await reader.read(BUFFER_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except BENIGN_CLOSE_ERRORS as e:
            logger.debug(f"Pipe {direction} closed: {e!r}")
        except Exception as e:
            logger.error(f"Pipe {direction} error", exc=e)
        finally:
            # Closing both sides unblocks the read in the other direction
            self._close_all(writers)

    @staticmethod
    def _close_all(writers: Tuple[asyncio.StreamWriter, ...]) -> None:
        for writer in writers:
            if not writer.is_closing():
                writer.close()
