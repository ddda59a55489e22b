# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Agent entry points, one per context (remote host, container, local)."""

import asyncio
from typing import Optional

import click

from autofwd.cli import cli


@cli.group()
def agent():
    """Run a detection agent (normally started by autofwd itself)."""
    pass


@agent.command(name="ssh")
@click.argument("manager_url")
@click.option("--docker/--no-docker", default=True, help="Provision labelled containers too.")
def agent_ssh(manager_url: str, docker: bool):
    """Agent for an SSH remote host, reporting to MANAGER_URL."""
    from autofwd.agent.ssh import SSHRemoteAgent

    asyncio.run(SSHRemoteAgent(manager_url, docker).run_until_signal())


@agent.command(name="docker")
@click.argument("forward_url", required=False)
@click.option("--max-port", type=int, default=None, help="Ignore ports above this one.")
def agent_docker(forward_url: Optional[str], max_port: Optional[int]):
    """Agent inside a container, reporting to FORWARD_URL.

    Without FORWARD_URL it only stops a previously started agent.
    """
    from autofwd.agent.base import BaseAgent
    from autofwd.agent.docker_container import PID_FILE, DockerContainerAgent

    if not forward_url:
        # Constructing the base agent kills the predecessor
        asyncio.run(BaseAgent("DOCKER-CONTAINER", PID_FILE).stop())
        return

    asyncio.run(DockerContainerAgent(forward_url, max_port=max_port).run_until_signal())


@agent.command(name="local")
@click.argument("forward_url")
def agent_local(forward_url: str):
    """Agent for docker containers on this machine, reporting to FORWARD_URL."""
    from autofwd.agent.local import LocalAgent

    asyncio.run(LocalAgent(forward_url).run_until_signal())
