"""Asynchronous rule evaluation queue.

Keeps rule evaluation (webhooks in particular) off the polling path. The
poller side only appends; a 1 Hz ticker drains up to batch_size items per tick
and skips ticks that land while a drain is still running.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
import logging
import time
from typing import Awaitable, Callable, List, Optional

from core.config import RulesConfig
from core.errors import RuleEvaluationTimeoutError
from core.models import DocumentChange, RuleExecutionResult
from core.rules_engine import RulesEngine

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedChange:
    change: DocumentChange
    content: Optional[str]
    enqueued_at: float


@dataclass(frozen=True)
class RuleQueueStats:
    queue_size: int
    processing: bool
    processed: int
    failed: int
    async_mode: bool


class RuleQueue:
    def __init__(
        self,
        engine: RulesEngine,
        config: RulesConfig = RulesConfig(),
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._items: deque[QueuedChange] = deque()
        self._processing = False
        self._ticker: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0
        self.skipped_ticks = 0

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def enqueue(self, change: DocumentChange, content: Optional[str] = None) -> None:
        """Append a change for later evaluation. Never blocks."""

        self._items.append(QueuedChange(change, content, self._clock()))
        LOGGER.debug("Queued change %s for rule evaluation (%s pending)", change.id, len(self._items))

    async def submit(self, change: DocumentChange, content: Optional[str] = None) -> List[RuleExecutionResult]:
        """Queue the change in async mode, otherwise evaluate it right away."""

        if self._config.async_mode:
            self.enqueue(change, content)
            return []
        return await self.evaluate_now(change, content)

    # Lifecycle

    def start(self) -> None:
        """Start the drain ticker. Must be called from a running event loop."""

        if self.is_running:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._run_ticker(), name="docwatch-rule-queue")
        LOGGER.info("Rule queue started (every %sms, batch %s)", self._config.drain_interval_ms, self._config.batch_size)

    async def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task
        LOGGER.info("Rule queue stopped with %s item(s) pending", len(self._items))

    async def _run_ticker(self) -> None:
        while True:
            await self._sleep(self._config.drain_interval_ms / 1000)
            self.tick()

    def tick(self) -> None:
        """Schedule a drain unless one is already running."""

        if self._processing:
            self.skipped_ticks += 1
            return
        if not self._items:
            return
        self._drain_task = asyncio.get_running_loop().create_task(self.process_queue())

    # Draining

    async def process_queue(self) -> int:
        """Evaluate one batch. Returns the number of items taken off the queue."""

        if self._processing or not self._items:
            return 0

        self._processing = True
        try:
            batch: List[QueuedChange] = []
            while self._items and len(batch) < max(1, self._config.batch_size):
                batch.append(self._items.popleft())
            LOGGER.info("Processing %s queued change(s)", len(batch))

            for item in batch:
                try:
                    await self._engine.evaluate_change_against_rules(item.change, item.content)
                except Exception:
                    self.failed += 1
                    LOGGER.exception("Failed to process queued change %s", item.change.id)
                else:
                    self.processed += 1
            return len(batch)
        finally:
            self._processing = False

    async def drain(self, max_wait_s: float = 30.0) -> bool:
        """Process until the queue is empty. Returns False if max_wait_s ran out."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait_s
        while self._items or self._processing:
            if loop.time() >= deadline:
                LOGGER.warning("Rule queue drain timed out after %ss, %s item(s) remaining", max_wait_s, len(self._items))
                return False
            if self._processing:
                await asyncio.sleep(0.01)
            else:
                await self.process_queue()
        LOGGER.info("Rule queue drained")
        return True

    async def evaluate_now(self, change: DocumentChange, content: Optional[str] = None) -> List[RuleExecutionResult]:
        """Evaluate immediately, raising RuleEvaluationTimeoutError past timeout_ms."""

        try:
            return await asyncio.wait_for(
                self._engine.evaluate_change_against_rules(change, content),
                timeout=self._config.timeout_ms / 1000,
            )
        except asyncio.TimeoutError as exc:
            raise RuleEvaluationTimeoutError(
                f"Rule evaluation for change {change.id} exceeded {self._config.timeout_ms}ms"
            ) from exc

    def stats(self) -> RuleQueueStats:
        return RuleQueueStats(
            queue_size=len(self._items),
            processing=self._processing,
            processed=self.processed,
            failed=self.failed,
            async_mode=self._config.async_mode,
        )
