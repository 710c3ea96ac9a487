"""Persistence ledger for tracked documents and the change audit trail.

Tracked-document rows are soft-deactivated on unwatch so the audit trail keeps
pointing at a real row. Change rows are append-only, one per detected
transition, debounced ones included.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Callable, List, Optional

from core.errors import TenantNotSetError
from core.models import ChangeDetectionResult, DocumentChange, TrackedDocument
from core.ports import LedgerStoragePort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeStats:
    total_changes: int
    notified_changes: int
    debounced_changes: int
    unique_modifiers: List[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentLedger:
    """User-scoped facade over LedgerStoragePort."""

    def __init__(
        self,
        storage: LedgerStoragePort,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._user_id = user_id
        self._clock = clock

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id

    def _require_user(self) -> str:
        if not self._user_id:
            raise TenantNotSetError("User id not set; call set_user_id() before ledger operations")
        return self._user_id

    # Tracked documents

    def start_tracking(
        self,
        doc_token: str,
        doc_type: str,
        chat_id_to_notify: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TrackedDocument:
        """Create the active row, or return the one that already exists."""

        user_id = self._require_user()
        existing = self._storage.get_tracked_document(user_id, doc_token)
        if existing is not None:
            LOGGER.info("Document %s already tracked for user %s", doc_token, user_id)
            return existing

        tracked = TrackedDocument(
            doc_token=doc_token,
            doc_type=doc_type,
            chat_id_to_notify=chat_id_to_notify,
            user_id=user_id,
            title=title,
            notes=notes,
            started_tracking_at=self._clock(),
        )
        saved = self._storage.insert_tracked_document(user_id, tracked)
        LOGGER.info("Persisted tracking for %s -> %s", doc_token, chat_id_to_notify)
        return saved

    def stop_tracking(self, doc_token: str) -> bool:
        """Deactivate the active row. Returns False if none was active."""

        user_id = self._require_user()
        removed = self._storage.deactivate_tracked_document(user_id, doc_token)
        if removed:
            LOGGER.info("Deactivated tracking for %s", doc_token)
        return removed > 0

    def update_tracked_state(
        self,
        doc_token: str,
        last_known_user: str,
        last_known_time: int,
        last_notification_time: Optional[float] = None,
    ) -> Optional[TrackedDocument]:
        """Persist the state after a delivered change.

        last_notification_time=None leaves the stored value untouched. Returns
        None when the document has no active row (it was unwatched meanwhile).
        """

        user_id = self._require_user()
        updated = self._storage.update_tracked_document(
            user_id, doc_token, last_known_user, last_known_time, last_notification_time
        )
        if updated is None:
            LOGGER.info("No active row for %s; state update ignored", doc_token)
        return updated

    def get_tracked_docs(self) -> List[TrackedDocument]:
        user_id = self._require_user()
        return self._storage.list_tracked_documents(user_id, active_only=True)

    def get_tracked_doc(self, doc_token: str) -> Optional[TrackedDocument]:
        user_id = self._require_user()
        return self._storage.get_tracked_document(user_id, doc_token)

    # Audit trail

    def record_change(
        self,
        doc_token: str,
        detection: ChangeDetectionResult,
        notification_sent: bool,
        error_message: Optional[str] = None,
    ) -> DocumentChange:
        user_id = self._require_user()
        if detection.change_type is None:
            raise ValueError("Only detected changes can be recorded")
        change = self._storage.insert_change(
            user_id=user_id,
            doc_token=doc_token,
            change_type=detection.change_type,
            new_modified_user=detection.current_user,
            new_modified_time=detection.current_time,
            previous_modified_user=detection.previous_user,
            previous_modified_time=detection.previous_time,
            debounced=detection.debounced,
            notification_sent=notification_sent,
            error_message=error_message,
            detected_at=self._clock(),
        )
        LOGGER.debug(
            "Recorded %s change for %s (debounced=%s, notified=%s)",
            change.change_type,
            doc_token,
            change.debounced,
            change.notification_sent,
        )
        return change

    def get_change_history(self, doc_token: str, limit: int = 50) -> List[DocumentChange]:
        """Newest first."""

        user_id = self._require_user()
        return self._storage.list_changes(user_id, doc_token, limit=limit)

    def get_change_stats(self, doc_token: str) -> ChangeStats:
        user_id = self._require_user()
        changes = self._storage.list_changes(user_id, doc_token)
        modifiers: List[str] = []
        for change in changes:
            if change.new_modified_user not in modifiers:
                modifiers.append(change.new_modified_user)
        return ChangeStats(
            total_changes=len(changes),
            notified_changes=sum(1 for c in changes if c.notification_sent),
            debounced_changes=sum(1 for c in changes if c.debounced),
            unique_modifiers=modifiers,
        )

    def health_check(self) -> bool:
        try:
            user_id = self._require_user()
            self._storage.list_tracked_documents(user_id)
        except Exception:
            LOGGER.exception("Ledger health check failed")
            return False
        return True
