# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Opens the SSH master connection and runs the remote agent over it."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from autofwd.forwarder.server import SSHForwardingServer
from autofwd.settings import get_settings
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

TERMINATE_TIMEOUT = 5.0  # seconds


class SSHAgentManager:
    """Owns the `ssh -o ControlMaster=yes` process.

    That one connection carries the reverse tunnel to the forwarding server,
    the remote agent's terminal, and every `-O forward` issued later.
    """

    def __init__(self, server: SSHForwardingServer, enable_docker_detection: bool = True):
        self.server = server
        self.remote_host = server.remote_host
        self.enable_docker_detection = enable_docker_detection
        settings = get_settings()
        self.ssh_command = settings.ssh_command
        self.agent_command = settings.agent_command
        self.process: Optional[asyncio.subprocess.Process] = None

    def build_command(self) -> List[str]:
        port = self.server.port
        remote_cmd = f"{self.agent_command} agent ssh 'http://localhost:{port}'"
        if not self.enable_docker_detection:
            remote_cmd += " --no-docker"
        return [
            self.ssh_command,
            "-tt",
            "-o",
            "ControlMaster=yes",
            "-o",
            f"ControlPath={self.server.ssh_control_path}",
            "-R",
            f"{port}:localhost:{port}",
            self.remote_host,
            remote_cmd,
        ]

    async def start(self) -> None:
        if self.process is not None:
            return
        logger.info(f"Starting SSH agent manager: {self.remote_host}")
        command = self.build_command()
        logger.debug(f"Running: {' '.join(command)}")
        self.process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
        )

    async def wait(self) -> int:
        """Wait for the SSH master connection to end."""
        if self.process is None:
            return 0
        return await self.process.wait()

    async def stop(self) -> None:
        await self.server.stop()
        process, self.process = self.process, None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("SSH master did not exit, killing it")
            process.kill()
            await process.wait()
