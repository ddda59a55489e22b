# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Manual forward management against a running forwarding server."""

import asyncio
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from autofwd.cli import cli
from autofwd.forwarder.ssh import (
    DEFAULT_REMOTE_HOST,
    ForwardingRequest,
    add_ssh_forwarding,
    delete_ssh_forwarding,
    list_ssh_forwardings,
)
from autofwd.settings import get_settings

console = Console()

url_option = click.option(
    "--url",
    default=None,
    help="Forwarding server URL (default: http://localhost:<manager_port>).",
)


def _server_url(url: Optional[str]) -> str:
    return url or get_settings().manager_url()


@cli.group()
def forward():
    """Add, remove, or list forwards by hand.

    Commands:
      add     - Forward LOCAL_PORT to REMOTE_PORT on the remote side
      remove  - Remove forwards by remote port, host, or tag
      list    - Show active forwards
    """
    pass


@forward.command(name="add")
@click.argument("local_port", type=int)
@click.argument("remote_port", type=int)
@click.option("--host", "remote_host", default=DEFAULT_REMOTE_HOST, show_default=True)
@click.option("--tag", default=None, help="Label for removing forwards in bulk.")
@url_option
def forward_add(local_port: int, remote_port: int, remote_host: str, tag: Optional[str], url: Optional[str]):
    """Forward LOCAL_PORT to REMOTE_PORT on the remote side."""
    try:
        request = ForwardingRequest(
            local_port=local_port, remote_host=remote_host, remote_port=remote_port, tag=tag
        )
    except ValidationError as e:
        raise click.ClickException(str(e))

    if not asyncio.run(add_ssh_forwarding(_server_url(url), request)):
        raise click.ClickException("Forwarding server did not accept the request")
    console.print(f"[green]✓ Requested {local_port}:{remote_host}:{remote_port}[/green]")


@forward.command(name="remove")
@click.option("--port", "remote_port", type=int, default=None, help="Remote port.")
@click.option("--host", "remote_host", default=None, help="Remote host.")
@click.option("--tag", default=None, help="Tag given when the forward was added.")
@url_option
def forward_remove(
    remote_port: Optional[int], remote_host: Optional[str], tag: Optional[str], url: Optional[str]
):
    """Remove forwards by remote port, remote host, or tag."""
    if remote_port is None and not remote_host and not tag:
        raise click.UsageError("Give at least one of --port, --host, --tag")

    ok = asyncio.run(
        delete_ssh_forwarding(
            _server_url(url), remote_port=remote_port, remote_host=remote_host, tag=tag
        )
    )
    if not ok:
        raise click.ClickException("Forwarding server did not accept the request")
    console.print("[green]✓ Removed matching forwards[/green]")


@forward.command(name="list")
@url_option
def forward_list(url: Optional[str]):
    """Show active forwards."""
    forwardings = asyncio.run(list_ssh_forwardings(_server_url(url)))
    if forwardings is None:
        raise click.ClickException("Forwarding server not reachable")

    if not forwardings:
        console.print("[dim]No active forwards[/dim]")
        return

    table = Table(title="Active forwards")
    table.add_column("Local", justify="right")
    table.add_column("Remote host")
    table.add_column("Remote port", justify="right")
    table.add_column("Tag")
    for item in forwardings:
        table.add_row(
            str(item.get("localPort")),
            str(item.get("remoteHost")),
            str(item.get("remotePort")),
            item.get("tag") or "",
        )
    console.print(table)
