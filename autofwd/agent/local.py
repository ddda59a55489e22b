# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Agent for docker containers on the operator's own machine."""

from __future__ import annotations

from pathlib import Path

from autofwd.agent.base import BaseAgent
from autofwd.agent.manager.docker_agent_manager import DockerAgentManager
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

PID_FILE = Path("/tmp/autofwd_local_agent.pid")


class LocalAgent(BaseAgent):
    def __init__(self, forward_url: str, pid_file: Path = PID_FILE):
        super().__init__("LOCAL-AGENT", pid_file)
        self.forward_url = forward_url
        self.docker_agent_manager = DockerAgentManager(forward_url, False)

    async def start(self) -> None:
        await super().start()
        await self.docker_agent_manager.start()
        logger.info(f"Local agent started, forward server: {self.forward_url}")

    async def stop(self) -> None:
        await self.docker_agent_manager.stop_all()
        await super().stop()
