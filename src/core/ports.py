"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, document platform, webhook
and notification adapters so that the core can be reused with different
backends. Storage calls are synchronous; everything that crosses the network
is a coroutine.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from core.models import (
    ChangeDetectionResult,
    ChangeRule,
    DocMetadata,
    DocumentChange,
    DocumentSnapshot,
    RuleAction,
    RuleCondition,
    TrackedDocument,
)


class MetadataFetcherPort(Protocol):
    """Reads current document metadata from the document platform."""

    async def fetch_metadata(self, doc_token: str, doc_type: str) -> Optional[DocMetadata]:
        ...


class ContentFetcherPort(Protocol):
    """Downloads the current content of a document."""

    async def fetch_content(self, doc_token: str, doc_type: str) -> Optional[str]:
        ...


class NotifierPort(Protocol):
    """Delivers a change notification to a chat."""

    async def notify(self, chat_id: str, title: str, content: str) -> None:
        ...


class WebhookSenderPort(Protocol):
    """Posts a JSON payload and returns the HTTP status code."""

    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        ...


class LedgerStoragePort(Protocol):
    """Tracked-document registry rows and the change audit trail."""

    def insert_tracked_document(self, user_id: str, tracked: TrackedDocument) -> TrackedDocument:
        ...

    def deactivate_tracked_document(self, user_id: str, doc_token: str) -> int:
        ...

    def update_tracked_document(
        self,
        user_id: str,
        doc_token: str,
        last_known_user: str,
        last_known_time: int,
        last_notification_time: Optional[float],
    ) -> Optional[TrackedDocument]:
        ...

    def get_tracked_document(self, user_id: str, doc_token: str) -> Optional[TrackedDocument]:
        ...

    def list_tracked_documents(self, user_id: str, active_only: bool = True) -> list[TrackedDocument]:
        ...

    def insert_change(
        self,
        user_id: str,
        doc_token: str,
        change_type: str,
        new_modified_user: str,
        new_modified_time: int,
        previous_modified_user: Optional[str],
        previous_modified_time: Optional[int],
        debounced: bool,
        notification_sent: bool,
        error_message: Optional[str],
        detected_at: datetime,
    ) -> DocumentChange:
        ...

    def list_changes(self, user_id: str, doc_token: str, limit: Optional[int] = None) -> list[DocumentChange]:
        ...


class SnapshotStoragePort(Protocol):
    """Compressed document snapshots."""

    def insert_snapshot(
        self,
        user_id: str,
        doc_token: str,
        revision_number: int,
        content_hash: str,
        content_size: int,
        compressed: bytes,
        compression_ratio: float,
        modified_by: str,
        modified_at: int,
        stored_at: datetime,
    ) -> DocumentSnapshot:
        ...

    def get_snapshot(self, user_id: str, doc_token: str, revision_number: int) -> Optional[DocumentSnapshot]:
        ...

    def get_snapshot_payload(self, user_id: str, doc_token: str, revision_number: int) -> Optional[bytes]:
        ...

    def get_snapshot_payload_by_id(self, user_id: str, snapshot_id: int) -> Optional[bytes]:
        ...

    def list_snapshots(
        self, user_id: str, doc_token: Optional[str] = None, limit: Optional[int] = None
    ) -> list[DocumentSnapshot]:
        ...

    def delete_snapshots_before(self, user_id: str, cutoff: datetime, doc_token: Optional[str] = None) -> int:
        ...


class RuleStoragePort(Protocol):
    """Per-document change rules."""

    def insert_rule(
        self,
        user_id: str,
        doc_token: str,
        name: str,
        condition: RuleCondition,
        action: RuleAction,
        description: Optional[str],
        created_at: datetime,
    ) -> ChangeRule:
        ...

    def update_rule(self, user_id: str, rule_id: int, changes: dict[str, Any]) -> Optional[ChangeRule]:
        ...

    def delete_rule(self, user_id: str, rule_id: int) -> int:
        ...

    def get_rule(self, user_id: str, rule_id: int) -> Optional[ChangeRule]:
        ...

    def list_rules(self, user_id: str, doc_token: Optional[str] = None, enabled_only: bool = False) -> list[ChangeRule]:
        ...

    def record_rule_execution(self, user_id: str, rule_id: int, executed_at: datetime) -> None:
        ...


class ChangeHandlerPort(Protocol):
    """Receives every detected change after the poller has handled delivery."""

    async def handle_change(
        self,
        tracked: TrackedDocument,
        metadata: DocMetadata,
        detection: ChangeDetectionResult,
        notification_sent: bool,
        notification_error: Optional[str],
        state_applied: bool,
    ) -> None:
        ...
