# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Common lifecycle for agent processes: pid file and signal-driven shutdown."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

from autofwd.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _kill_previous(pid_file: Path) -> None:
    """Kill the process recorded in pid_file, if any."""
    try:
        pid = int(pid_file.read_text().strip())
    except FileNotFoundError:
        return
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable pid file {pid_file}: {e}")
        return

    if pid == os.getpid():
        return
    logger.info(f"Killing previous process: {pid}")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.error("Failed to kill previous process", exc=e)


class BaseAgent:
    """One agent per pid file: a new agent replaces the previous one."""

    def __init__(self, name: str, pid_file: Path):
        configure_logging(daemon=True, tag=name)
        self.name = name
        self.pid_file = Path(pid_file)

        _kill_previous(self.pid_file)
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass

    async def run_until_signal(self) -> None:
        """Start, wait for SIGINT or SIGTERM, then stop."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await self.start()
        try:
            await stop_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.stop()
            logger.info(f"Cleanup {self.name} done, exiting...")
