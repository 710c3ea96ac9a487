"""Change detection and debounce logic (core domain).

Everything here is pure: callers pass in the clock reading and persist the
resulting state themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import time
from typing import Iterable, Optional

from core.config import DetectionConfig
from core.models import (
    CHANGE_NEW_DOCUMENT,
    CHANGE_TIME_UPDATED,
    CHANGE_USER_CHANGED,
    ChangeDetectionResult,
    DocMetadata,
    TrackedDocument,
)

LOGGER = logging.getLogger(__name__)


def detect_change(
    metadata: DocMetadata,
    prior: Optional[TrackedDocument],
    config: DetectionConfig = DetectionConfig(),
    now: Optional[float] = None,
) -> ChangeDetectionResult:
    """Compare fresh metadata with the previously recorded state.

    Decision order:
    - No prior state: always a new_document change, never debounced, so the
      first observation of a watched document surfaces.
    - Same modification time and same modifier: no change.
    - Otherwise a change. It is debounced when the last notification for the
      document was sent less than debounce_window_ms ago. The window is
      measured from the last delivered notification, not the last detection.
    """

    now = time.time() if now is None else now

    if prior is None:
        LOGGER.debug("New document tracking started: %s", metadata.doc_token)
        return ChangeDetectionResult(
            has_changed=True,
            debounced=False,
            change_type=CHANGE_NEW_DOCUMENT,
            current_user=metadata.last_modified_user,
            current_time=metadata.last_modified_time,
            detected_at=now,
            reason="First time tracking document",
        )

    same_time = metadata.last_modified_time == prior.last_known_time
    same_user = metadata.last_modified_user == prior.last_known_user
    if same_time and same_user:
        LOGGER.debug("No change detected for %s", metadata.doc_token)
        return ChangeDetectionResult(
            has_changed=False,
            debounced=False,
            current_user=metadata.last_modified_user,
            current_time=metadata.last_modified_time,
            previous_user=prior.last_known_user,
            previous_time=prior.last_known_time,
            detected_at=now,
            reason="No metadata change (same user, same time)",
        )

    if same_user:
        change_type = CHANGE_TIME_UPDATED
        reason = f"Document updated by {metadata.last_modified_user}"
    else:
        change_type = CHANGE_USER_CHANGED
        reason = f"Different user detected ({prior.last_known_user or 'unknown'} -> {metadata.last_modified_user})"

    elapsed_ms = (now - prior.last_notification_time) * 1000
    debounced = elapsed_ms < config.debounce_window_ms
    if debounced:
        reason = (
            f"Debounced: change within {config.debounce_window_ms}ms of last notification "
            f"({int(elapsed_ms)}ms ago)"
        )
        LOGGER.debug("Change detected but debounced for %s", metadata.doc_token)

    return ChangeDetectionResult(
        has_changed=True,
        debounced=debounced,
        change_type=change_type,
        previous_user=prior.last_known_user,
        previous_time=prior.last_known_time,
        current_user=metadata.last_modified_user,
        current_time=metadata.last_modified_time,
        detected_at=now,
        reason=reason,
    )


def should_notify_again(last_notification_time: float, min_interval_ms: int = 5000, now: Optional[float] = None) -> bool:
    """Return True once min_interval_ms has passed since the last notification."""

    now = time.time() if now is None else now
    return (now - last_notification_time) * 1000 >= min_interval_ms


def seconds_since_last_notification(last_notification_time: float, now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    return round(now - last_notification_time)


def format_detection_result(result: ChangeDetectionResult) -> str:
    """One-line status used in logs."""

    if not result.has_changed:
        status = "NO CHANGE"
    elif result.debounced:
        status = "DEBOUNCED"
    else:
        status = "DETECTED"
    if result.reason:
        return f"{status} ({result.reason})"
    return status


def create_updated_tracked_state(
    tracked: TrackedDocument,
    metadata: DocMetadata,
    notified_at: Optional[float] = None,
) -> TrackedDocument:
    """Return the state to store after a notification went out."""

    notified_at = time.time() if notified_at is None else notified_at
    return replace(
        tracked,
        last_known_user=metadata.last_modified_user,
        last_known_time=metadata.last_modified_time,
        last_notification_time=notified_at,
        title=metadata.title or tracked.title,
    )


@dataclass(frozen=True)
class ChangePattern:
    total_changes: int
    total_debounced: int
    unique_users: frozenset[str]
    average_change_interval_ms: int


def analyze_change_pattern(results: Iterable[ChangeDetectionResult]) -> ChangePattern:
    """Summarize a sequence of detections for debugging or analytics."""

    results = list(results)
    unique_users = {r.current_user for r in results if r.has_changed and not r.debounced}
    total_debounced = sum(1 for r in results if r.debounced)

    average_interval = 0
    if len(results) > 1:
        intervals = [
            (results[i].detected_at - results[i - 1].detected_at) * 1000 for i in range(1, len(results))
        ]
        average_interval = round(sum(intervals) / len(intervals))

    return ChangePattern(
        total_changes=len(results),
        total_debounced=total_debounced,
        unique_users=frozenset(unique_users),
        average_change_interval_ms=average_interval,
    )
