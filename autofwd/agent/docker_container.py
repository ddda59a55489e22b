# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Agent that runs inside a docker container.

Ports opened inside the container usually listen on 127.0.0.1 only, so for
each one the agent starts a relay on the container's own IP and asks the
forwarding server to tunnel to that relay instead.
"""

from __future__ import annotations

import random
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from autofwd.agent.base import BaseAgent
from autofwd.detector.port import PortDetector
from autofwd.forwarder.socket import SocketForwarder, SocketForwardingOptions
from autofwd.forwarder.ssh import ForwardingRequest, add_ssh_forwarding, delete_ssh_forwarding
from autofwd.settings import get_settings
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

PID_FILE = Path("/tmp/autofwd_docker_container_agent.pid")

# Relay ports are drawn above the detector's ceiling so the agent never
# detects its own listeners.
RELAY_PORT_RANGE = (20001, 29999)


def get_container_ip() -> str:
    return socket.gethostbyname(socket.gethostname())


def get_container_id(cpuset_path: Path = Path("/proc/1/cpuset")) -> str:
    """Short container id: from /proc/1/cpuset when available, else the hostname."""
    try:
        cpuset = cpuset_path.read_text().strip()
    except OSError:
        cpuset = ""
    parts = [p for p in cpuset.split("/") if p]
    if len(parts) >= 2:
        return parts[-1][:12]
    return socket.gethostname()[:12]


@dataclass
class _PortForward:
    forwarder: SocketForwarder
    source_port: int


class DockerContainerAgent(BaseAgent):
    def __init__(
        self,
        forward_url: str,
        max_port: Optional[int] = None,
        container_ip: Optional[str] = None,
        container_id: Optional[str] = None,
        pid_file: Path = PID_FILE,
    ):
        super().__init__("DOCKER-CONTAINER", pid_file)
        settings = get_settings()
        self.forward_url = forward_url
        self.container_ip = container_ip or get_container_ip()
        self.container_id = container_id or get_container_id()
        self.forwarders: Dict[int, _PortForward] = {}

        self.watcher = PortDetector(
            self._on_port_open,
            self._on_port_close,
            max_port=max_port or settings.container_max_port,
            interval=settings.poll_interval,
        )

    def _pick_source_port(self) -> int:
        used = {entry.source_port for entry in self.forwarders.values()}
        while True:
            port = random.randint(*RELAY_PORT_RANGE)
            if port not in used:
                return port

    async def _on_port_open(self, port: int) -> None:
        logger.info(f"New container port detected: {port}")
        source_port = self._pick_source_port()
        forwarder = SocketForwarder(
            SocketForwardingOptions(
                source_type="tcp",
                source_address=self.container_ip,
                source_port=source_port,
                target_type="tcp",
                target_address="localhost",
                target_port=port,
            )
        )
        try:
            await forwarder.start()
        except OSError as e:
            logger.error("Failed to setup port forwarding", exc=e)
            return

        self.forwarders[port] = _PortForward(forwarder, source_port)
        await add_ssh_forwarding(
            self.forward_url,
            ForwardingRequest(
                local_port=port,
                remote_host=self.container_ip,
                remote_port=source_port,
                tag=self.container_id,
            ),
        )

    async def _on_port_close(self, port: int) -> None:
        logger.info(f"Container port closed: {port}")
        entry = self.forwarders.pop(port, None)
        if entry is None:
            return
        await entry.forwarder.stop()
        await delete_ssh_forwarding(
            self.forward_url,
            remote_port=entry.source_port,
            remote_host=self.container_ip,
        )

    async def start(self) -> None:
        await super().start()
        logger.info(f"Docker container agent started, forward server: {self.forward_url}")
        await self.watcher.start()

    async def stop(self) -> None:
        await self.watcher.stop()
        for entry in list(self.forwarders.values()):
            await entry.forwarder.stop()
        self.forwarders.clear()
        await super().stop()
