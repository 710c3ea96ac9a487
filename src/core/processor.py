"""Post-detection processing pipeline.

This module is integration-agnostic. It receives every change the poller
detects and drives the rest of the flow in a fixed order:
1) Append the audit row (debounced changes included)
2) Persist the new tracked state when the poller applied it
3) Stop here for debounced changes
4) Fetch content and store a snapshot (if eligible)
5) Diff against the previous snapshot on a background task
6) Hand the change to the rule queue

Snapshot, diff and rule failures are logged and never reach the poller; the
notification for the change has already gone out by the time they run.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional

from core.background import BackgroundTasks
from core.config import ProcessingConfig, RulesConfig
from core.diff_engine import compute_diff, compute_diff_with_timeout, format_diff_for_card
from core.errors import RuleEvaluationTimeoutError
from core.ledger import DocumentLedger
from core.models import (
    ChangeDetectionResult,
    DiffResult,
    DocMetadata,
    DocumentChange,
    DocumentSnapshot,
    TrackedDocument,
)
from core.ports import ContentFetcherPort, NotifierPort
from core.rule_queue import RuleQueue
from core.snapshots import SnapshotService, revision_from_modified_time

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    snapshot: DocumentSnapshot
    diff: Optional[DiffResult]
    diff_summary: str


class ChangeProcessor:
    """Implements ChangeHandlerPort for the poller."""

    def __init__(
        self,
        ledger: DocumentLedger,
        snapshots: Optional[SnapshotService] = None,
        rule_queue: Optional[RuleQueue] = None,
        content_fetcher: Optional[ContentFetcherPort] = None,
        config: ProcessingConfig = ProcessingConfig(),
        rules_config: RulesConfig = RulesConfig(),
        background: Optional[BackgroundTasks] = None,
        diff_notifier: Optional[NotifierPort] = None,
    ) -> None:
        self._ledger = ledger
        self._snapshots = snapshots
        self._rule_queue = rule_queue
        self._content_fetcher = content_fetcher
        self._config = config
        self._rules_config = rules_config
        self._background = background or BackgroundTasks(config.max_background_tasks)
        self._diff_notifier = diff_notifier

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    async def handle_change(
        self,
        tracked: TrackedDocument,
        metadata: DocMetadata,
        detection: ChangeDetectionResult,
        notification_sent: bool,
        notification_error: Optional[str],
        state_applied: bool,
    ) -> None:
        change = self._ledger.record_change(tracked.doc_token, detection, notification_sent, notification_error)

        if state_applied:
            self._ledger.update_tracked_state(
                tracked.doc_token,
                metadata.last_modified_user,
                metadata.last_modified_time,
                tracked.last_notification_time if notification_sent else None,
            )

        if detection.debounced:
            return

        content = await self._fetch_content(tracked)
        if content is not None:
            self._snapshot(tracked, metadata, content)
        await self._submit_rules(change, content)

    async def _fetch_content(self, tracked: TrackedDocument) -> Optional[str]:
        if self._content_fetcher is None:
            return None
        if not self._wants_snapshot() and not self._rules_config.enabled:
            return None
        try:
            content = await self._content_fetcher.fetch_content(tracked.doc_token, tracked.doc_type)
        except Exception as exc:
            LOGGER.warning("Could not download content for %s: %s", tracked.doc_token, exc)
            return None
        if content is None:
            LOGGER.warning("No content returned for %s", tracked.doc_token)
        return content

    def _wants_snapshot(self) -> bool:
        return (
            self._snapshots is not None
            and self._config.enable_auto_snapshot
            and self._snapshots.config.snapshot_on_change
        )

    def _snapshot(self, tracked: TrackedDocument, metadata: DocMetadata, content: str) -> None:
        snapshots = self._snapshots
        if snapshots is None or not self._wants_snapshot():
            return
        try:
            snapshot = snapshots.create_snapshot(
                tracked.doc_token,
                content,
                revision_number=revision_from_modified_time(metadata.last_modified_time),
                modified_by=metadata.last_modified_user,
                modified_at=metadata.last_modified_time,
                doc_type=tracked.doc_type,
            )
        except Exception:
            LOGGER.exception("Failed to store snapshot for %s", tracked.doc_token)
            return

        if snapshot is None or not self._config.enable_diff:
            return
        self._background.spawn(
            self.diff_with_previous(tracked, snapshot, content),
            name=f"diff:{tracked.doc_token}",
        )

    async def diff_with_previous(
        self, tracked: TrackedDocument, snapshot: DocumentSnapshot, content: str
    ) -> Optional[DiffResult]:
        """Diff a freshly stored snapshot against the one before it."""

        snapshots = self._snapshots
        if snapshots is None:
            return None
        history = snapshots.get_snapshot_history(tracked.doc_token, limit=2)
        if len(history) < 2:
            return None
        previous = history[1]
        previous_content = snapshots.get_snapshot_content_by_id(previous.id)
        if previous_content is None:
            LOGGER.warning("Could not load previous content for %s", tracked.doc_token)
            return None

        diff = await compute_diff_with_timeout(
            previous_content,
            content,
            previous.revision_number,
            snapshot.revision_number,
            self._config.diff_timeout_ms,
        )
        LOGGER.info("Diff for %s: %s", tracked.doc_token, diff.summary.summary)

        if self._diff_notifier is not None and self._config.send_diff_cards and diff.summary.total_changes:
            await self._diff_notifier.notify(tracked.chat_id_to_notify, "Document diff", format_diff_for_card(diff))
        return diff

    async def _submit_rules(self, change: DocumentChange, content: Optional[str]) -> None:
        if self._rule_queue is None or not self._rules_config.enabled:
            return
        try:
            await self._rule_queue.submit(change, content)
        except RuleEvaluationTimeoutError as exc:
            LOGGER.warning("%s", exc)
        except Exception:
            LOGGER.exception("Rule evaluation failed for change %s", change.id)

    def history_with_diffs(self, doc_token: str, limit: int = 10) -> List[HistoryEntry]:
        """Snapshots newest first, each paired with its diff from the one before."""

        store = self._snapshots
        if store is None:
            return []
        snapshots = store.get_snapshot_history(doc_token, limit=limit + 1)
        entries: List[HistoryEntry] = []
        for current, previous in zip(snapshots, snapshots[1:]):
            current_content = store.get_snapshot_content_by_id(current.id)
            previous_content = store.get_snapshot_content_by_id(previous.id)
            if current_content is None or previous_content is None:
                entries.append(HistoryEntry(current, None, "Unable to compute diff"))
                continue
            diff = compute_diff(previous_content, current_content, previous.revision_number, current.revision_number)
            entries.append(HistoryEntry(current, diff, diff.summary.summary))
        return entries[:limit]

    async def join(self) -> None:
        """Wait for background work scheduled so far."""

        await self._background.join()
