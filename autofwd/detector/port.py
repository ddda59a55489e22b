# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Listening-port detector backed by /proc/net/tcp.

Each line of /proc/net/tcp (and tcp6) looks like:

   46: 010310AC:9C4C 030310AC:1770 0A 00000150:00000000 01:00000019 00000000  1000 ...
       local addr:port  remote addr:port  state  tx:rx queues  timer  retrnsmt  uid

Addresses and ports are hex, state 0A is LISTEN, the eighth column is the
owning uid.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set

from autofwd.detector.base import PollingDetector
from autofwd.settings import TCP_LISTEN
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TCP_TABLES = ("/proc/net/tcp", "/proc/net/tcp6")

PortCallback = Callable[[int], object]


@dataclass(frozen=True)
class TcpEntry:
    """One row of the kernel socket table."""

    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: int
    uid: int


def parse_tcp_line(line: str) -> Optional[TcpEntry]:
    """Parse a line from /proc/net/tcp. Returns None for header or junk lines."""
    parts = line.split()
    if len(parts) < 12 or parts[0] == "sl":
        return None

    try:
        local_ip, local_port = parts[1].rsplit(":", 1)
        remote_ip, remote_port = parts[2].rsplit(":", 1)
        return TcpEntry(
            local_address=local_ip,
            local_port=int(local_port, 16),
            remote_address=remote_ip,
            remote_port=int(remote_port, 16),
            state=int(parts[3], 16),
            uid=int(parts[7]),
        )
    except ValueError:
        return None


def parse_tcp_table(content: str) -> List[TcpEntry]:
    entries = []
    for line in content.splitlines():
        entry = parse_tcp_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def listening_ports(entries: Iterable[TcpEntry], uid: int) -> Set[int]:
    """Ports in LISTEN state owned by `uid`."""
    return {e.local_port for e in entries if e.state == TCP_LISTEN and e.uid == uid}


class PortDetector(PollingDetector):
    """Watches for ports that start or stop listening.

    The first tick after start() only records the baseline, so ports that were
    already open when the detector started never produce an open event.
    """

    name = "port-detector"

    def __init__(
        self,
        on_port_open: PortCallback,
        on_port_close: PortCallback,
        max_port: int = 65535,
        uid: Optional[int] = None,
        interval: float = 1.0,
        tcp_tables: Sequence[str | Path] = DEFAULT_TCP_TABLES,
    ):
        super().__init__(interval=interval)
        self.on_port_open = on_port_open
        self.on_port_close = on_port_close
        self.max_port = max_port
        self.uid = os.getuid() if uid is None else uid
        self.tcp_tables = [Path(p) for p in tcp_tables]
        self._current_ports: Set[int] = set()

    @property
    def current_ports(self) -> Set[int]:
        """Copy of the last snapshot."""
        return set(self._current_ports)

    def read_tcp_table(self) -> List[TcpEntry]:
        entries: List[TcpEntry] = []
        for table in self.tcp_tables:
            try:
                content = table.read_text()
            except FileNotFoundError:
                continue
            entries.extend(parse_tcp_table(content))
        return entries

    def check_ports(self, initial: bool = False) -> None:
        """Run one diff cycle against the socket table."""
        ports = listening_ports(self.read_tcp_table(), self.uid)

        if not initial:
            for port in sorted(ports - self._current_ports):
                if port <= self.max_port:
                    self._dispatch(self.on_port_open, port)
            for port in sorted(self._current_ports - ports):
                if port <= self.max_port:
                    self._dispatch(self.on_port_close, port)

        self._current_ports = ports

    async def _tick(self, initial: bool) -> None:
        self.check_ports(initial=initial)
