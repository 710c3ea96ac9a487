"""Watch/unwatch entry points that keep the ledger and the poller in step."""

from __future__ import annotations

import logging
from typing import List, Optional

from core.ledger import DocumentLedger
from core.models import TrackedDocument
from core.poller import DocumentPoller

LOGGER = logging.getLogger(__name__)


class DocumentTracker:
    def __init__(self, ledger: DocumentLedger, poller: DocumentPoller) -> None:
        self._ledger = ledger
        self._poller = poller

    def start_tracking(
        self,
        doc_token: str,
        doc_type: str,
        chat_id: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TrackedDocument:
        """Persist the watch and register it with the poller.

        Watching an already-watched document returns the existing row.
        """

        tracked = self._ledger.start_tracking(doc_token, doc_type, chat_id, title=title, notes=notes)
        self._poller.start_tracking(tracked)
        return tracked

    def stop_tracking(self, doc_token: str) -> bool:
        in_poller = self._poller.stop_tracking(doc_token)
        in_ledger = self._ledger.stop_tracking(doc_token)
        return in_poller or in_ledger

    def restore(self) -> List[TrackedDocument]:
        """Register every active persisted watch with the poller (startup)."""

        restored = []
        for tracked in self._ledger.get_tracked_docs():
            if self._poller.start_tracking(tracked):
                restored.append(tracked)
        LOGGER.info("Restored %s tracked document(s)", len(restored))
        return restored

    def sync(self) -> tuple[int, int]:
        """Reconcile the poller with rows changed by another process.

        New active rows are registered and deactivated ones dropped; in-memory
        state of documents already being polled is left alone. Returns
        (added, removed).
        """

        active = {tracked.doc_token: tracked for tracked in self._ledger.get_tracked_docs()}
        added = 0
        for doc_token, tracked in active.items():
            if self._poller.get_tracked_doc(doc_token) is None and self._poller.start_tracking(tracked):
                added += 1
        removed = 0
        for tracked in self._poller.get_tracked_docs():
            if tracked.doc_token not in active and self._poller.stop_tracking(tracked.doc_token):
                removed += 1
        if added or removed:
            LOGGER.info("Tracking synced: %s added, %s removed", added, removed)
        return added, removed
