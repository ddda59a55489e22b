# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Operator-side entry point: forwarding server plus SSH master connection."""

import asyncio
import signal
from typing import Optional

import click

from autofwd.agent.manager.ssh_agent_manager import SSHAgentManager
from autofwd.cli import cli
from autofwd.forwarder.server import SSHForwardingServer
from autofwd.settings import get_settings
from autofwd.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def _serve(server: SSHForwardingServer, manager: SSHAgentManager) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await server.start()
    await manager.start()

    stop_wait = asyncio.create_task(stop_event.wait())
    ssh_wait = asyncio.create_task(manager.wait())
    try:
        done, _ = await asyncio.wait({stop_wait, ssh_wait}, return_when=asyncio.FIRST_COMPLETED)
        if ssh_wait in done:
            logger.warning(f"SSH connection to {server.remote_host} ended ({ssh_wait.result()})")
    finally:
        for task in (stop_wait, ssh_wait):
            task.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await manager.stop()
        logger.info("Shutdown complete")


@cli.command()
@click.argument("remote_host")
@click.option("--port", type=int, default=None, help="Forwarding server port.")
@click.option("--bind", "bind_host", default=None, help="Forwarding server bind address.")
@click.option(
    "--docker/--no-docker",
    default=True,
    help="Also provision labelled docker containers on the remote host.",
)
@click.pass_context
def serve(
    ctx: click.Context,
    remote_host: str,
    port: Optional[int],
    bind_host: Optional[str],
    docker: bool,
):
    """Forward ports from REMOTE_HOST (any ssh destination) to this machine."""
    configure_logging(debug=ctx.obj.get("debug", False), daemon=True, tag="MAIN")
    settings = get_settings()

    server = SSHForwardingServer(
        remote_host=remote_host,
        control_path=settings.control_path,
        server_port=port or settings.manager_port,
        bind_host=bind_host or settings.bind_host,
        ssh_command=settings.ssh_command,
    )
    manager = SSHAgentManager(server, enable_docker_detection=docker)
    asyncio.run(_serve(server, manager))
