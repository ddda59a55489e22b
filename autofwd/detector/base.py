# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared poll loop for the port and container detectors."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Optional, Set

from autofwd.utils.logging import get_logger

logger = get_logger(__name__)


class PollingDetector:
    """Base class only: runs `_tick()` every `interval` seconds on the running event loop.

    Ticks never overlap: a slow tick pushes the next one back. Subclasses
    implement `_tick(initial)`; the first tick after `start()` gets
    `initial=True`.
    """

    name = "detector"

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start polling. Calling it again while running is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-poll")

    async def stop(self) -> None:
        """Stop polling. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        initial = True
        while True:
            started = time.monotonic()
            try:
                await self._tick(initial)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} poll failed", exc=e)
            initial = False
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    async def _tick(self, initial: bool) -> None:
        raise NotImplementedError(f"{type(self).__name__} must implement _tick()")

    def _dispatch(self, callback: Callable[[Any], Any], arg: Any) -> None:
        """Fire one event.

        Plain functions run inline; coroutine functions are scheduled so the
        poll loop does not wait on them. Callback errors are logged only.
        """
        try:
            if inspect.iscoroutinefunction(callback):
                task = asyncio.get_running_loop().create_task(callback(arg))
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
            else:
                callback(arg)
        except Exception as e:
            logger.error(f"{self.name} callback failed for {arg!r}", exc=e)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name} callback failed", exc=exc)
