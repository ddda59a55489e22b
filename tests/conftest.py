# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared fixtures and helpers for autofwd tests.

Everything here runs against loopback sockets and temporary files; no test
needs ssh, docker, or a real /proc/net/tcp.
"""

import asyncio
import socket
import time
from pathlib import Path
from typing import Callable, Iterable, Tuple

import pytest

from autofwd.settings import reset_settings

TCP_HEADER = (
    "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt"
    "   uid  timeout inode"
)


def make_tcp_line(
    port: int,
    state: int = 0x0A,
    uid: int = 1000,
    index: int = 0,
    local_ip: str = "0100007F",
) -> str:
    """One /proc/net/tcp row for 127.0.0.1:port."""
    return (
        f"  {index}: {local_ip}:{port:04X} 00000000:0000 {state:02X} "
        f"00000000:00000000 00:00000000 00000000  {uid}        0 {10000 + index} 1 "
        "0000000000000000 100 0 0 10 0"
    )


def write_tcp_table(path: Path, ports: Iterable[int], uid: int = 1000, state: int = 0x0A) -> None:
    lines = [TCP_HEADER]
    for index, port in enumerate(ports):
        lines.append(make_tcp_line(port, state=state, uid=uid, index=index))
    path.write_text("\n".join(lines) + "\n")


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` on the event loop until it holds or `timeout` passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def start_echo_server() -> Tuple[asyncio.AbstractServer, int]:
    """TCP echo server on 127.0.0.1 with an ephemeral port."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, host="127.0.0.1", port=0)
    return server, server.sockets[0].getsockname()[1]


def unused_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings loader at an empty temp location."""
    monkeypatch.setenv("AUTOFWD_CONFIG", str(tmp_path / "autofwd-config.yml"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def tcp_table(tmp_path):
    """Path of a fake /proc/net/tcp, initially with only the header."""
    path = tmp_path / "tcp"
    write_tcp_table(path, [])
    return path
