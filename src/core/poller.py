"""Document polling service.

The poller owns the set of tracked documents and ticks on a fixed interval.
Each tick fans out one fetch -> detect -> notify pipeline per document with a
bounded number of fetches in flight, and joins them so that one document's
failure never aborts the others.

Lifecycle is explicit: the bootstrap calls start() and stop(). While started,
the interval timer exists exactly when at least one document is tracked.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from core.change_detector import create_updated_tracked_state, detect_change, format_detection_result
from core.config import DetectionConfig, PollingConfig
from core.models import CHANGE_NEW_DOCUMENT, ChangeDetectionResult, DocMetadata, TrackedDocument
from core.ports import ChangeHandlerPort, MetadataFetcherPort, NotifierPort
from core.registry import TrackedDocumentRegistry

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_ONE_HOUR_S = 3600.0


@dataclass(frozen=True)
class PollingMetrics:
    docs_tracked: int
    total_ticks: int
    last_poll_time: Optional[float]
    last_poll_duration_ms: int
    avg_poll_duration_ms: int
    success_rate: float
    successful_polls: int
    failed_polls: int
    errors_in_last_hour: int
    notifications_in_last_hour: int
    notifications_sent: int
    failed_notifications: int
    changes_detected: int


@dataclass(frozen=True)
class PollingHealth:
    status: str
    reason: str


def build_change_notification(metadata: DocMetadata, detection: ChangeDetectionResult) -> tuple[str, str]:
    """Return (title, body) for a change notification."""

    if detection.change_type == CHANGE_NEW_DOCUMENT:
        title = "Now tracking document"
    else:
        title = "Document changed"
    modified_at = datetime.fromtimestamp(metadata.last_modified_time).strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        metadata.title or metadata.doc_token,
        f"Modified by: {metadata.last_modified_user}",
        f"Modified at: {modified_at}",
        f"Document type: {metadata.doc_type}",
    ]
    if detection.reason:
        lines.append(f"Why: {detection.reason}")
    return title, "\n".join(lines)


def _chunks(items: List[TrackedDocument], size: int) -> Iterable[List[TrackedDocument]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


class DocumentPoller:
    """Polls tracked documents for metadata changes."""

    def __init__(
        self,
        fetcher: MetadataFetcherPort,
        notifier: NotifierPort,
        config: PollingConfig = PollingConfig(),
        registry: Optional[TrackedDocumentRegistry] = None,
        change_handler: Optional[ChangeHandlerPort] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._notifier = notifier
        self._config = config
        self._registry = registry if registry is not None else TrackedDocumentRegistry()
        self._change_handler = change_handler
        self._clock = clock
        self._sleep = sleep
        self._detection = DetectionConfig(debounce_window_ms=config.debounce_window_ms)
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrent_polls))

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._in_flight = 0
        self.max_in_flight_seen = 0
        self._reset_counters()

        LOGGER.info(
            "Poller configured: interval=%sms max_concurrent=%s batch_size=%s debounce=%sms",
            config.interval_ms,
            config.max_concurrent_polls,
            config.batch_size,
            config.debounce_window_ms,
        )

    def _reset_counters(self) -> None:
        self._total_ticks = 0
        self._last_poll_time: Optional[float] = None
        self._successful_polls = 0
        self._failed_polls = 0
        self._changes_detected = 0
        self._notifications_sent = 0
        self._notifications_failed = 0
        self._poll_outcomes: deque[bool] = deque(maxlen=self._config.duration_samples)
        self._poll_durations: deque[int] = deque(maxlen=self._config.duration_samples)
        self._error_timestamps: deque[float] = deque()
        self._notification_timestamps: deque[float] = deque()

    @property
    def change_handler(self) -> Optional[ChangeHandlerPort]:
        return self._change_handler

    @change_handler.setter
    def change_handler(self, handler: Optional[ChangeHandlerPort]) -> None:
        self._change_handler = handler

    @property
    def is_polling(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    # Lifecycle

    def start(self) -> None:
        """Enable the interval timer. Must be called from a running event loop."""

        self._running = True
        self._sync_timer()

    async def stop(self) -> None:
        self._running = False
        task = self._timer_task
        self._timer_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        LOGGER.info("Polling stopped")

    def _sync_timer(self) -> None:
        wanted = self._running and len(self._registry) > 0
        if wanted and not self.is_polling:
            self._timer_task = asyncio.get_running_loop().create_task(self._run_timer(), name="docwatch-poller")
            LOGGER.info("Polling started every %sms", self._config.interval_ms)
        elif not wanted and self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            LOGGER.info("Polling stopped (no tracked documents)")

    async def _run_timer(self) -> None:
        while True:
            await self._sleep(self._config.interval_ms / 1000)
            try:
                await self.poll_all()
            except Exception:
                LOGGER.exception("Unexpected error during polling tick")
                self._record_error()

    # Registry

    def start_tracking(self, tracked: TrackedDocument) -> bool:
        """Register a document. Returns False if it was already tracked."""

        if tracked.doc_token in self._registry:
            LOGGER.info("Already tracking %s", tracked.doc_token)
            return False
        self._registry.set(tracked)
        LOGGER.info("Started tracking %s -> %s", tracked.doc_token, tracked.chat_id_to_notify)
        self._sync_timer()
        return True

    def stop_tracking(self, doc_token: str) -> bool:
        if not self._registry.delete(doc_token):
            LOGGER.info("Not tracking %s", doc_token)
            return False
        LOGGER.info("Stopped tracking %s", doc_token)
        self._sync_timer()
        return True

    def get_tracked_docs(self) -> List[TrackedDocument]:
        return self._registry.values()

    def get_tracked_doc(self, doc_token: str) -> Optional[TrackedDocument]:
        return self._registry.get(doc_token)

    # Polling

    async def poll_all(self) -> None:
        """Run one tick over a snapshot of the tracked set."""

        docs = self._registry.values()
        if not docs:
            return

        started = time.perf_counter()
        self._total_ticks += 1
        self._last_poll_time = self._clock()
        LOGGER.info("Polling %s document(s)", len(docs))

        outcomes: List[object] = []
        for batch in _chunks(docs, self._config.batch_size):
            outcomes.extend(
                await asyncio.gather(*(self._poll_bounded(tracked) for tracked in batch), return_exceptions=True)
            )

        success_count = 0
        for tracked, outcome in zip(docs, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.error("Error polling %s: %s", tracked.doc_token, outcome)
                ok = False
            else:
                ok = bool(outcome)
            self._poll_outcomes.append(ok)
            if ok:
                success_count += 1
                self._successful_polls += 1
            else:
                self._failed_polls += 1
                self._record_error()

        duration_ms = int((time.perf_counter() - started) * 1000)
        self._poll_durations.append(duration_ms)
        LOGGER.info(
            "Poll completed in %sms (%s success, %s failures)",
            duration_ms,
            success_count,
            len(docs) - success_count,
        )

    async def _poll_bounded(self, tracked: TrackedDocument) -> bool:
        async with self._semaphore:
            self._in_flight += 1
            self.max_in_flight_seen = max(self.max_in_flight_seen, self._in_flight)
            try:
                return await self._poll_single(tracked)
            finally:
                self._in_flight -= 1

    async def poll_document(self, doc_token: str) -> bool:
        """Poll one tracked document outside the regular tick."""

        tracked = self._registry.get(doc_token)
        if tracked is None:
            return False
        return await self._poll_bounded(tracked)

    async def _poll_single(self, tracked: TrackedDocument) -> bool:
        metadata = await self._fetch_metadata(tracked)
        if metadata is None:
            LOGGER.warning("Failed to fetch metadata for %s", tracked.doc_token)
            return False

        prior = tracked if tracked.has_observation else None
        detection = detect_change(metadata, prior, self._detection, now=self._clock())
        LOGGER.debug("%s: %s", tracked.doc_token, format_detection_result(detection))
        if not detection.has_changed:
            return True

        self._changes_detected += 1
        if detection.debounced:
            LOGGER.info("Change debounced for %s: %s", tracked.doc_token, detection.reason)
            await self._hand_off(tracked, metadata, detection, False, None, False)
            return True

        notification_error = await self._notify(tracked, metadata, detection)
        sent = notification_error is None
        updated = create_updated_tracked_state(tracked, metadata, notified_at=self._clock())
        if not sent:
            # Keep the debounce anchor on the last delivered notification.
            updated.last_notification_time = tracked.last_notification_time
        applied = self._registry.update_if_present(updated)
        if not applied:
            LOGGER.info("%s was untracked while polling; state update dropped", tracked.doc_token)

        await self._hand_off(updated, metadata, detection, sent, notification_error, applied)
        return True

    async def _fetch_metadata(self, tracked: TrackedDocument) -> Optional[DocMetadata]:
        attempts = max(1, self._config.retry_attempts)
        delays = self._config.retry_delays_ms or (0,)
        for attempt in range(attempts):
            if attempt > 0:
                delay_ms = delays[min(attempt - 1, len(delays) - 1)]
                LOGGER.debug(
                    "Retry attempt %s/%s for %s after %sms", attempt + 1, attempts, tracked.doc_token, delay_ms
                )
                await self._sleep(delay_ms / 1000)
            try:
                metadata = await self._fetcher.fetch_metadata(tracked.doc_token, tracked.doc_type)
            except Exception as exc:
                LOGGER.warning("Attempt %s/%s failed for %s: %s", attempt + 1, attempts, tracked.doc_token, exc)
                continue
            if metadata is not None:
                return metadata
            LOGGER.warning("Attempt %s/%s returned no metadata for %s", attempt + 1, attempts, tracked.doc_token)
        return None

    async def _notify(
        self, tracked: TrackedDocument, metadata: DocMetadata, detection: ChangeDetectionResult
    ) -> Optional[str]:
        title, content = build_change_notification(metadata, detection)
        try:
            await self._notifier.notify(tracked.chat_id_to_notify, title, content)
        except Exception as exc:
            self._notifications_failed += 1
            LOGGER.exception("Failed to send notification for %s", tracked.doc_token)
            return str(exc) or exc.__class__.__name__
        self._notifications_sent += 1
        self._notification_timestamps.append(self._clock())
        LOGGER.info("Notification sent for %s to %s", tracked.doc_token, tracked.chat_id_to_notify)
        return None

    async def _hand_off(
        self,
        tracked: TrackedDocument,
        metadata: DocMetadata,
        detection: ChangeDetectionResult,
        sent: bool,
        notification_error: Optional[str],
        applied: bool,
    ) -> None:
        if self._change_handler is None:
            return
        try:
            await self._change_handler.handle_change(tracked, metadata, detection, sent, notification_error, applied)
        except Exception:
            LOGGER.exception("Change handler failed for %s", tracked.doc_token)
            self._record_error()

    # Metrics

    def _record_error(self) -> None:
        self._error_timestamps.append(self._clock())

    def _prune(self, timestamps: deque[float], now: float) -> int:
        cutoff = now - _ONE_HOUR_S
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return len(timestamps)

    def get_metrics(self) -> PollingMetrics:
        now = self._clock()
        outcomes = list(self._poll_outcomes)
        success_rate = sum(outcomes) / len(outcomes) if outcomes else 1.0
        durations = list(self._poll_durations)
        avg_duration = round(sum(durations) / len(durations)) if durations else 0
        return PollingMetrics(
            docs_tracked=len(self._registry),
            total_ticks=self._total_ticks,
            last_poll_time=self._last_poll_time,
            last_poll_duration_ms=durations[-1] if durations else 0,
            avg_poll_duration_ms=avg_duration,
            success_rate=round(success_rate, 2),
            successful_polls=self._successful_polls,
            failed_polls=self._failed_polls,
            errors_in_last_hour=self._prune(self._error_timestamps, now),
            notifications_in_last_hour=self._prune(self._notification_timestamps, now),
            notifications_sent=self._notifications_sent,
            failed_notifications=self._notifications_failed,
            changes_detected=self._changes_detected,
        )

    def get_health(self) -> PollingHealth:
        metrics = self.get_metrics()
        tracked = metrics.docs_tracked > 0

        if tracked and self._poll_outcomes and not any(self._poll_outcomes):
            return PollingHealth(UNHEALTHY, "Every recent poll failed")
        if tracked and metrics.success_rate < 0.9:
            return PollingHealth(DEGRADED, f"Success rate {metrics.success_rate:.2f} < 0.90")
        if metrics.errors_in_last_hour > 5:
            return PollingHealth(DEGRADED, f"{metrics.errors_in_last_hour} errors in last hour")
        if not tracked:
            return PollingHealth(HEALTHY, "No documents tracked")
        return PollingHealth(HEALTHY, "All systems operational")

    def clear_metrics(self) -> None:
        self._reset_counters()

    async def reset(self) -> None:
        await self.stop()
        self._registry.clear()
        self._reset_counters()
