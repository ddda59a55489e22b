# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Docker container detector that finds running containers carrying a label."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from autofwd.detector.base import PollingDetector
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

DOCKER_PS_FORMAT = "{{.ID}}\t{{.Names}}\t{{.Labels}}"
DOCKER_PS_TIMEOUT = 10.0

ContainerCallback = Callable[["ContainerInfo"], object]


@dataclass
class ContainerInfo:
    """A running container as reported by `docker ps`."""

    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


def parse_labels(value: str) -> Dict[str, str]:
    """Parse docker's `k=v,k2=v2` label rendering."""
    labels: Dict[str, str] = {}
    for item in value.split(","):
        if not item:
            continue
        key, _, label_value = item.partition("=")
        labels[key.strip()] = label_value
    return labels


def parse_docker_ps(output: str) -> List[ContainerInfo]:
    """Parse `docker ps --format DOCKER_PS_FORMAT` output, skipping junk lines."""
    containers = []
    for line in output.strip().split("\n"):
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < 2:
            logger.debug(f"Skipping malformed docker ps line: {line!r}")
            continue
        labels = parse_labels(parts[2]) if len(parts) > 2 else {}
        containers.append(ContainerInfo(id=parts[0].strip(), name=parts[1].strip(), labels=labels))
    return containers


class DockerDetector(PollingDetector):
    """Reports containers carrying `label_selector` as they start and stop.

    There is no silent first tick: containers already running when the
    detector starts are reported as started, since each of them still needs
    an agent.
    """

    name = "docker-detector"

    def __init__(
        self,
        on_container_start: ContainerCallback,
        on_container_stop: ContainerCallback,
        label_selector: str,
        interval: float = 1.0,
        docker_command: str = "docker",
    ):
        super().__init__(interval=interval)
        self.on_container_start = on_container_start
        self.on_container_stop = on_container_stop
        self.label_selector = label_selector
        self.docker_command = docker_command
        self._containers: Dict[str, ContainerInfo] = {}

    @property
    def containers(self) -> Dict[str, ContainerInfo]:
        """Copy of the tracked inventory, keyed by container id."""
        return dict(self._containers)

    async def get_containers(self) -> Optional[List[ContainerInfo]]:
        """List labelled running containers. Returns None if docker failed."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_command,
                "ps",
                "--format",
                DOCKER_PS_FORMAT,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to run {self.docker_command} ps", exc=e)
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=DOCKER_PS_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"{self.docker_command} ps timed out")
            return None

        if proc.returncode != 0:
            logger.warning(
                f"{self.docker_command} ps exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
            return None

        return [
            c
            for c in parse_docker_ps(stdout.decode(errors="replace"))
            if self.label_selector in c.labels
        ]

    async def check_containers(self) -> None:
        """Run one diff cycle against `docker ps`."""
        current = await self.get_containers()
        if current is None:
            return

        current_ids = {c.id for c in current}

        for container in current:
            if container.id not in self._containers:
                self._containers[container.id] = container
                self._dispatch(self.on_container_start, container)

        for container_id, container in list(self._containers.items()):
            if container_id not in current_ids:
                del self._containers[container_id]
                self._dispatch(self.on_container_stop, container)

    async def _tick(self, initial: bool) -> None:
        await self.check_containers()
