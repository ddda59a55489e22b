# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Agent that runs on the SSH remote host and reports its listening ports."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from autofwd.agent.base import BaseAgent
from autofwd.agent.manager.docker_agent_manager import DockerAgentManager
from autofwd.detector.port import PortDetector
from autofwd.forwarder.ssh import (
    DEFAULT_REMOTE_HOST,
    ForwardingRequest,
    add_ssh_forwarding,
    delete_ssh_forwarding,
)
from autofwd.settings import get_settings
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

PID_FILE = Path("/tmp/autofwd_ssh_remote_agent.pid")


class SSHRemoteAgent(BaseAgent):
    """Forwards every port the remote user starts listening on to the same local port."""

    def __init__(
        self,
        forwarding_manager_url: str,
        enable_docker_detection: bool = True,
        pid_file: Path = PID_FILE,
    ):
        super().__init__("SSH-AGENT", pid_file)
        self.forwarding_manager_url = forwarding_manager_url
        settings = get_settings()

        self.port_detector = PortDetector(
            self._on_port_open,
            self._on_port_close,
            interval=settings.poll_interval,
        )
        self.docker_agent_manager: Optional[DockerAgentManager] = None
        if enable_docker_detection:
            self.docker_agent_manager = DockerAgentManager(forwarding_manager_url, True)

    async def _on_port_open(self, port: int) -> None:
        logger.info(f"New port detected: {port}")
        await add_ssh_forwarding(
            self.forwarding_manager_url,
            ForwardingRequest(local_port=port, remote_host=DEFAULT_REMOTE_HOST, remote_port=port),
        )

    async def _on_port_close(self, port: int) -> None:
        logger.info(f"Port closed: {port}")
        await delete_ssh_forwarding(self.forwarding_manager_url, remote_port=port)

    async def start(self) -> None:
        await super().start()
        await self.port_detector.start()
        if self.docker_agent_manager:
            await self.docker_agent_manager.start()
        logger.success(f"SSH agent started on remote, manager server: {self.forwarding_manager_url}")

    async def stop(self) -> None:
        await self.port_detector.stop()
        if self.docker_agent_manager:
            await self.docker_agent_manager.stop_all()
        await super().stop()
