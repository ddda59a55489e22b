# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""autofwd CLI package."""

import click

from autofwd import __version__


@click.group()
@click.version_option(version=__version__, prog_name="autofwd")
@click.option("--debug", is_flag=True, help="Verbose logging.")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """autofwd - Forward every port that starts listening, automatically."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# Register commands
from autofwd.cli.commands import agent, forward, serve  # noqa: E402,F401


def main():
    """Main entry point."""
    cli(obj={})
