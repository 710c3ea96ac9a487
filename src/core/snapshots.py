"""Compressed document snapshots (core domain).

A snapshot is only stored when it is worth storing: the document type must be
in the allow-list, the serialized content must fit under max_doc_size_bytes,
and gzip must shrink it by at least min_compression_ratio. Anything else is
skipped with a warning and create_snapshot returns None.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import gzip
import hashlib
import json
import logging
from typing import Any, Callable, List, Optional, Union

from core.config import SnapshotConfig
from core.errors import TenantNotSetError
from core.models import DocumentSnapshot
from core.ports import SnapshotStoragePort

LOGGER = logging.getLogger(__name__)

SnapshotContent = Union[str, dict, list]


@dataclass(frozen=True)
class SnapshotStats:
    total_snapshots: int
    total_compressed_size: int
    total_original_size: int
    average_compression_ratio: float
    oldest_snapshot: Optional[datetime]
    newest_snapshot: Optional[datetime]

    @property
    def status_message(self) -> str:
        return f"{self.total_snapshots} snapshots, average compression {self.average_compression_ratio:.2f}x"


def serialize_content(content: SnapshotContent) -> str:
    """Return the text form that gets hashed and compressed."""

    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, sort_keys=True)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotService:
    """Stores, retrieves and prunes document snapshots for one user."""

    def __init__(
        self,
        storage: SnapshotStoragePort,
        config: SnapshotConfig = SnapshotConfig(),
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._config = config
        self._user_id = user_id
        self._clock = clock

    @property
    def config(self) -> SnapshotConfig:
        return self._config

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id

    def _require_user(self) -> str:
        if not self._user_id:
            raise TenantNotSetError("User id not set; call set_user_id() before snapshot operations")
        return self._user_id

    def is_supported_doc_type(self, doc_type: str) -> bool:
        return doc_type in self._config.include_doc_types

    def is_within_size_limit(self, size_bytes: int) -> bool:
        return size_bytes <= self._config.max_doc_size_bytes

    def create_snapshot(
        self,
        doc_token: str,
        content: SnapshotContent,
        revision_number: int,
        modified_by: str,
        modified_at: int,
        doc_type: str,
    ) -> Optional[DocumentSnapshot]:
        """Compress and persist content, or return None when it is ineligible."""

        user_id = self._require_user()

        if not self.is_supported_doc_type(doc_type):
            LOGGER.warning("Document type %r is not snapshotted, skipping %s", doc_type, doc_token)
            return None

        text = serialize_content(content)
        raw = text.encode("utf-8")
        size = len(raw)
        if not self.is_within_size_limit(size):
            LOGGER.warning(
                "Document %s is %s bytes, over the %s byte limit, skipping snapshot",
                doc_token,
                size,
                self._config.max_doc_size_bytes,
            )
            return None

        digest = content_hash(text)
        # mtime=0 keeps the payload deterministic for identical content.
        compressed = gzip.compress(raw, mtime=0)
        ratio = size / len(compressed)
        if ratio < self._config.min_compression_ratio:
            LOGGER.warning(
                "Compression ratio %.2fx for %s is below %.2fx, skipping snapshot",
                ratio,
                doc_token,
                self._config.min_compression_ratio,
            )
            return None

        snapshot = self._storage.insert_snapshot(
            user_id=user_id,
            doc_token=doc_token,
            revision_number=revision_number,
            content_hash=digest,
            content_size=size,
            compressed=compressed,
            compression_ratio=ratio,
            modified_by=modified_by,
            modified_at=modified_at,
            stored_at=self._clock(),
        )
        LOGGER.info("Stored snapshot for %s (rev %s, compressed %.2fx)", doc_token, revision_number, ratio)
        return snapshot

    def get_snapshot(self, doc_token: str, revision_number: int) -> Optional[DocumentSnapshot]:
        user_id = self._require_user()
        return self._storage.get_snapshot(user_id, doc_token, revision_number)

    def get_snapshot_content(self, doc_token: str, revision_number: int) -> Optional[str]:
        """Return the decompressed content of the latest snapshot of a revision."""

        user_id = self._require_user()
        return _decompress(self._storage.get_snapshot_payload(user_id, doc_token, revision_number))

    def get_snapshot_content_by_id(self, snapshot_id: int) -> Optional[str]:
        """Return the decompressed content of one stored snapshot.

        Revision numbers come from modification times and can repeat, so
        consecutive snapshots are compared by id.
        """

        user_id = self._require_user()
        return _decompress(self._storage.get_snapshot_payload_by_id(user_id, snapshot_id))

    def get_snapshot_history(self, doc_token: str, limit: int = 20) -> List[DocumentSnapshot]:
        """Latest snapshots first."""

        user_id = self._require_user()
        return self._storage.list_snapshots(user_id, doc_token, limit=limit)

    def get_snapshot_stats(self, doc_token: Optional[str] = None) -> SnapshotStats:
        user_id = self._require_user()
        snapshots = self._storage.list_snapshots(user_id, doc_token)
        if not snapshots:
            return SnapshotStats(0, 0, 0, 0.0, None, None)

        total_compressed = sum(s.compressed_size for s in snapshots)
        total_original = sum(s.content_size for s in snapshots)
        average = total_original / total_compressed if total_compressed > 0 else 0.0
        stored = sorted(s.stored_at for s in snapshots)
        return SnapshotStats(
            total_snapshots=len(snapshots),
            total_compressed_size=total_compressed,
            total_original_size=total_original,
            average_compression_ratio=average,
            oldest_snapshot=stored[0],
            newest_snapshot=stored[-1],
        )

    def prune_old_snapshots(self, doc_token: Optional[str] = None) -> int:
        """Delete snapshots older than retention_days; returns the count removed."""

        user_id = self._require_user()
        cutoff = self._clock() - timedelta(days=self._config.retention_days)
        removed = self._storage.delete_snapshots_before(user_id, cutoff, doc_token)
        LOGGER.info("Pruned %s snapshot(s) older than %s days", removed, self._config.retention_days)
        return removed

    def health_check(self) -> bool:
        try:
            user_id = self._require_user()
            self._storage.list_snapshots(user_id, limit=1)
        except Exception:
            LOGGER.exception("Snapshot storage health check failed")
            return False
        return True


def _decompress(payload: Optional[bytes]) -> Optional[str]:
    if not payload:
        return None
    return gzip.decompress(payload).decode("utf-8")


def revision_from_modified_time(modified_time: Any) -> int:
    """Revision numbers are the document's modification epoch in seconds."""

    return int(modified_time)
