# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Launches the container agent in every labelled container.

The agent is expected to be installed in the container image; this manager
only starts it (detached, through the Docker Engine API) when the container
appears and retracts the container's forwards when it goes away.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Set
from urllib.parse import urlparse

import docker
from docker.errors import APIError, DockerException, NotFound

from autofwd.detector.docker import ContainerInfo, DockerDetector
from autofwd.forwarder.socket import SocketForwarder, SocketForwardingOptions
from autofwd.forwarder.ssh import delete_ssh_forwarding
from autofwd.settings import DOCKER_HOST_GATEWAY, get_settings
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)


class DockerAgentManager:
    """Watches labelled containers and starts/stops their agents.

    With `enable_manager_forwarder` the forwarding server (loopback only) is
    re-exposed on all interfaces at port+1 so containers can reach it through
    host.docker.internal; otherwise containers are pointed at the server's
    own port.
    """

    def __init__(
        self,
        manager_server_url: str,
        enable_manager_forwarder: bool = True,
        docker_client: Optional[Any] = None,
    ):
        settings = get_settings()
        self.manager_server_url = manager_server_url
        self.agent_command = settings.agent_command
        self.agents: Set[str] = set()
        self._client = docker_client

        manager_port = urlparse(manager_server_url).port or settings.manager_port
        docker_port = manager_port + 1 if enable_manager_forwarder else manager_port
        self.manager_server_for_docker_url = f"http://{DOCKER_HOST_GATEWAY}:{docker_port}"

        self.docker_detector = DockerDetector(
            self._on_container_start,
            self._on_container_stop,
            settings.docker_label,
            interval=settings.docker_poll_interval,
            docker_command=settings.docker_command,
        )

        self.manager_server_forwarder: Optional[SocketForwarder] = None
        if enable_manager_forwarder:
            self.manager_server_forwarder = SocketForwarder(
                SocketForwardingOptions(
                    source_type="tcp",
                    source_address="0.0.0.0",
                    source_port=docker_port,
                    target_type="tcp",
                    target_address="localhost",
                    target_port=manager_port,
                )
            )

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def start(self) -> None:
        await self.docker_detector.start()
        if self.manager_server_forwarder:
            await self.manager_server_forwarder.start()

    async def _on_container_start(self, container: ContainerInfo) -> None:
        logger.info(f"New container detected: {container.name}")
        await self.start_agent(container.id, self.manager_server_for_docker_url)

    async def _on_container_stop(self, container: ContainerInfo) -> None:
        logger.info(f"Container stopped: {container.id}")
        self.agents.discard(container.id)
        await delete_ssh_forwarding(self.manager_server_url, tag=container.id)

    def _exec_detached(self, container_id: str, command: List[str]) -> bool:
        try:
            container = self.client.containers.get(container_id)
            container.exec_run(command, detach=True)
            return True
        except NotFound:
            logger.warning(f"Container {container_id} disappeared before the agent started")
        except (APIError, DockerException) as e:
            logger.error(f"Failed to exec in container {container_id}", exc=e)
        return False

    async def run_agent(self, container_id: str, forward_url: Optional[str] = None) -> bool:
        """Exec the container agent. Without a URL the agent only stops its predecessor."""
        command = [self.agent_command, "agent", "docker"]
        if forward_url:
            command.append(forward_url)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._exec_detached, container_id, command)

    async def start_agent(self, container_id: str, forward_url: str) -> None:
        if await self.run_agent(container_id, forward_url):
            self.agents.add(container_id)

    async def stop_all(self) -> None:
        for container_id in list(self.agents):
            await self.run_agent(container_id)
            self.agents.discard(container_id)
        await self.docker_detector.stop()
        if self.manager_server_forwarder:
            await self.manager_server_forwarder.stop()
