"""Bounded group of fire-and-forget background tasks.

Work such as diff computation runs after the notification has gone out. It
is scheduled here instead of as bare tasks so concurrency stays bounded and
tests (or shutdown) can wait for every pending job with join().
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

LOGGER = logging.getLogger(__name__)


class BackgroundTasks:
    def __init__(self, max_concurrency: int = 4) -> None:
        self._max_concurrency = max(1, max_concurrency)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Schedule coro on the running loop; failures are logged, not raised."""

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        task = asyncio.get_running_loop().create_task(
            self._run(coro, name or "background", self._semaphore), name=name
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                LOGGER.exception("Background task %s failed", name)
                return
        self.completed += 1

    async def join(self) -> None:
        """Wait until every task scheduled so far (and any they spawn) is done."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
