"""SQLite storage adapter.

Implements the core LedgerStoragePort, SnapshotStoragePort and
RuleStoragePort using a single SQLite database. Every row is scoped by
user_id.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
import json
import sqlite3
from typing import Any, Iterator, Optional

from core.models import (
    ChangeRule,
    DocumentChange,
    DocumentSnapshot,
    RuleAction,
    RuleCondition,
    TrackedDocument,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    """Store timestamps as UTC ISO strings so they sort lexicographically."""

    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the core storage ports."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - tracked_documents: watch registrations, soft-deactivated on unwatch
        - document_changes: append-only audit trail of detected changes
        - document_snapshots: gzip-compressed content per revision
        - document_rules: per-document automation rules
        """

        with self._connect() as conn:
            # last_known_time stays NULL until the first observation.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tracked_documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    doc_token TEXT NOT NULL,
                    doc_type TEXT NOT NULL,
                    chat_id_to_notify TEXT NOT NULL,
                    title TEXT,
                    notes TEXT,
                    last_known_user TEXT NOT NULL DEFAULT '',
                    last_known_time INTEGER,
                    last_notification_time REAL NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    started_tracking_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
                """
            )
            # At most one active row per (user, document); inactive rows are history.
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_tracked_documents_active
                ON tracked_documents (user_id, doc_token) WHERE is_active = 1
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    doc_token TEXT NOT NULL,
                    change_type TEXT NOT NULL,
                    previous_modified_user TEXT,
                    previous_modified_time INTEGER,
                    new_modified_user TEXT NOT NULL,
                    new_modified_time INTEGER NOT NULL,
                    debounced INTEGER NOT NULL,
                    notification_sent INTEGER NOT NULL,
                    error_message TEXT,
                    change_detected_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_document_changes_doc ON document_changes (user_id, doc_token, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    doc_token TEXT NOT NULL,
                    revision_number INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    content_size INTEGER NOT NULL,
                    compressed_size INTEGER NOT NULL,
                    compression_ratio REAL NOT NULL,
                    payload BLOB NOT NULL,
                    modified_by TEXT,
                    modified_at INTEGER,
                    stored_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_document_snapshots_doc "
                "ON document_snapshots (user_id, doc_token, stored_at)"
            )
            # condition_value is JSON: a string, a list of strings, or NULL.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    doc_token TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    condition_type TEXT NOT NULL,
                    condition_value TEXT,
                    condition_case_insensitive INTEGER NOT NULL DEFAULT 0,
                    action_type TEXT NOT NULL,
                    action_target TEXT,
                    action_template TEXT,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    execution_count INTEGER NOT NULL DEFAULT 0,
                    last_executed_at TIMESTAMP,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
                """
            )

    # Tracked documents

    @staticmethod
    def _row_to_tracked(row: sqlite3.Row) -> TrackedDocument:
        return TrackedDocument(
            id=row["id"],
            user_id=row["user_id"],
            doc_token=row["doc_token"],
            doc_type=row["doc_type"],
            chat_id_to_notify=row["chat_id_to_notify"],
            title=row["title"],
            notes=row["notes"],
            last_known_user=row["last_known_user"],
            last_known_time=row["last_known_time"],
            last_notification_time=row["last_notification_time"],
            is_active=bool(row["is_active"]),
            started_tracking_at=_parse(row["started_tracking_at"]),
        )

    def insert_tracked_document(self, user_id: str, tracked: TrackedDocument) -> TrackedDocument:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO tracked_documents (
                    user_id,
                    doc_token,
                    doc_type,
                    chat_id_to_notify,
                    title,
                    notes,
                    last_known_user,
                    last_known_time,
                    last_notification_time,
                    is_active,
                    started_tracking_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    user_id,
                    tracked.doc_token,
                    tracked.doc_type,
                    tracked.chat_id_to_notify,
                    tracked.title,
                    tracked.notes,
                    tracked.last_known_user,
                    tracked.last_known_time,
                    tracked.last_notification_time,
                    _iso(tracked.started_tracking_at),
                    _iso(tracked.started_tracking_at),
                ),
            )
            row_id = cur.lastrowid
        return replace(tracked, id=row_id, user_id=user_id, is_active=True)

    def deactivate_tracked_document(self, user_id: str, doc_token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tracked_documents
                SET is_active = 0, updated_at = ?
                WHERE user_id = ? AND doc_token = ? AND is_active = 1
                """,
                (_iso(datetime.now(timezone.utc)), user_id, doc_token),
            )
            return cur.rowcount

    def update_tracked_document(
        self,
        user_id: str,
        doc_token: str,
        last_known_user: str,
        last_known_time: int,
        last_notification_time: Optional[float],
    ) -> Optional[TrackedDocument]:
        """Update the active row; a NULL last_notification_time keeps the stored one."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tracked_documents
                SET last_known_user = ?,
                    last_known_time = ?,
                    last_notification_time = COALESCE(?, last_notification_time),
                    updated_at = ?
                WHERE user_id = ? AND doc_token = ? AND is_active = 1
                """,
                (
                    last_known_user,
                    last_known_time,
                    last_notification_time,
                    _iso(datetime.now(timezone.utc)),
                    user_id,
                    doc_token,
                ),
            )
            if cur.rowcount == 0:
                return None
        return self.get_tracked_document(user_id, doc_token)

    def get_tracked_document(self, user_id: str, doc_token: str) -> Optional[TrackedDocument]:
        """Return the active row for a document, if any."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tracked_documents WHERE user_id = ? AND doc_token = ? AND is_active = 1",
                (user_id, doc_token),
            ).fetchone()
        return self._row_to_tracked(row) if row else None

    def list_tracked_documents(self, user_id: str, active_only: bool = True) -> list[TrackedDocument]:
        query = "SELECT * FROM tracked_documents WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", (user_id,)).fetchall()
        return [self._row_to_tracked(row) for row in rows]

    # Change audit trail

    @staticmethod
    def _row_to_change(row: sqlite3.Row) -> DocumentChange:
        return DocumentChange(
            id=row["id"],
            user_id=row["user_id"],
            doc_token=row["doc_token"],
            change_type=row["change_type"],
            previous_modified_user=row["previous_modified_user"],
            previous_modified_time=row["previous_modified_time"],
            new_modified_user=row["new_modified_user"],
            new_modified_time=row["new_modified_time"],
            debounced=bool(row["debounced"]),
            notification_sent=bool(row["notification_sent"]),
            error_message=row["error_message"],
            change_detected_at=_parse(row["change_detected_at"]),
        )

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
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO document_changes (
                    user_id,
                    doc_token,
                    change_type,
                    previous_modified_user,
                    previous_modified_time,
                    new_modified_user,
                    new_modified_time,
                    debounced,
                    notification_sent,
                    error_message,
                    change_detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    doc_token,
                    change_type,
                    previous_modified_user,
                    previous_modified_time,
                    new_modified_user,
                    new_modified_time,
                    int(debounced),
                    int(notification_sent),
                    error_message,
                    _iso(detected_at),
                ),
            )
            row_id = cur.lastrowid
        return DocumentChange(
            id=row_id,
            user_id=user_id,
            doc_token=doc_token,
            change_type=change_type,
            previous_modified_user=previous_modified_user,
            previous_modified_time=previous_modified_time,
            new_modified_user=new_modified_user,
            new_modified_time=new_modified_time,
            debounced=debounced,
            notification_sent=notification_sent,
            error_message=error_message,
            change_detected_at=detected_at,
        )

    def list_changes(self, user_id: str, doc_token: str, limit: Optional[int] = None) -> list[DocumentChange]:
        """Newest first."""

        query = "SELECT * FROM document_changes WHERE user_id = ? AND doc_token = ? ORDER BY id DESC"
        params: tuple[Any, ...] = (user_id, doc_token)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_change(row) for row in rows]

    # Snapshots

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> DocumentSnapshot:
        return DocumentSnapshot(
            id=row["id"],
            user_id=row["user_id"],
            doc_token=row["doc_token"],
            revision_number=row["revision_number"],
            content_hash=row["content_hash"],
            content_size=row["content_size"],
            compressed_size=row["compressed_size"],
            compression_ratio=row["compression_ratio"],
            modified_by=row["modified_by"],
            modified_at=row["modified_at"],
            stored_at=_parse(row["stored_at"]),
        )

    _SNAPSHOT_COLUMNS = (
        "id, user_id, doc_token, revision_number, content_hash, content_size, "
        "compressed_size, compression_ratio, modified_by, modified_at, stored_at"
    )

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
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO document_snapshots (
                    user_id,
                    doc_token,
                    revision_number,
                    content_hash,
                    content_size,
                    compressed_size,
                    compression_ratio,
                    payload,
                    modified_by,
                    modified_at,
                    stored_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    doc_token,
                    revision_number,
                    content_hash,
                    content_size,
                    len(compressed),
                    compression_ratio,
                    sqlite3.Binary(compressed),
                    modified_by,
                    modified_at,
                    _iso(stored_at),
                ),
            )
            row_id = cur.lastrowid
        return DocumentSnapshot(
            id=row_id,
            user_id=user_id,
            doc_token=doc_token,
            revision_number=revision_number,
            content_hash=content_hash,
            content_size=content_size,
            compressed_size=len(compressed),
            compression_ratio=compression_ratio,
            modified_by=modified_by,
            modified_at=modified_at,
            stored_at=stored_at,
        )

    def get_snapshot(self, user_id: str, doc_token: str, revision_number: int) -> Optional[DocumentSnapshot]:
        """Latest stored snapshot of a revision."""

        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {self._SNAPSHOT_COLUMNS} FROM document_snapshots
                WHERE user_id = ? AND doc_token = ? AND revision_number = ?
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, doc_token, revision_number),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def get_snapshot_payload(self, user_id: str, doc_token: str, revision_number: int) -> Optional[bytes]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload FROM document_snapshots
                WHERE user_id = ? AND doc_token = ? AND revision_number = ?
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, doc_token, revision_number),
            ).fetchone()
        return bytes(row["payload"]) if row else None

    def get_snapshot_payload_by_id(self, user_id: str, snapshot_id: int) -> Optional[bytes]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM document_snapshots WHERE user_id = ? AND id = ?",
                (user_id, snapshot_id),
            ).fetchone()
        return bytes(row["payload"]) if row else None

    def list_snapshots(
        self, user_id: str, doc_token: Optional[str] = None, limit: Optional[int] = None
    ) -> list[DocumentSnapshot]:
        """Newest first."""

        query = f"SELECT {self._SNAPSHOT_COLUMNS} FROM document_snapshots WHERE user_id = ?"
        params: tuple[Any, ...] = (user_id,)
        if doc_token is not None:
            query += " AND doc_token = ?"
            params += (doc_token,)
        query += " ORDER BY stored_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    def delete_snapshots_before(self, user_id: str, cutoff: datetime, doc_token: Optional[str] = None) -> int:
        """Delete old snapshots and return the number removed."""

        query = "DELETE FROM document_snapshots WHERE user_id = ? AND stored_at < ?"
        params: tuple[Any, ...] = (user_id, _iso(cutoff))
        if doc_token is not None:
            query += " AND doc_token = ?"
            params += (doc_token,)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    # Rules

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> ChangeRule:
        raw_value = row["condition_value"]
        return ChangeRule(
            id=row["id"],
            user_id=row["user_id"],
            doc_token=row["doc_token"],
            name=row["name"],
            description=row["description"],
            condition=RuleCondition(
                type=row["condition_type"],
                value=json.loads(raw_value) if raw_value is not None else None,
                case_insensitive=bool(row["condition_case_insensitive"]),
            ),
            action=RuleAction(
                type=row["action_type"],
                target=row["action_target"],
                template=row["action_template"],
            ),
            enabled=bool(row["is_enabled"]),
            execution_count=row["execution_count"],
            last_executed_at=_parse(row["last_executed_at"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    @staticmethod
    def _condition_columns(condition: RuleCondition) -> dict[str, Any]:
        return {
            "condition_type": condition.type,
            "condition_value": json.dumps(condition.value) if condition.value is not None else None,
            "condition_case_insensitive": int(condition.case_insensitive),
        }

    @staticmethod
    def _action_columns(action: RuleAction) -> dict[str, Any]:
        return {
            "action_type": action.type,
            "action_target": action.target,
            "action_template": action.template,
        }

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
        columns: dict[str, Any] = {
            "user_id": user_id,
            "doc_token": doc_token,
            "name": name,
            "description": description,
            **self._condition_columns(condition),
            **self._action_columns(action),
            "is_enabled": 1,
            "created_at": _iso(created_at),
            "updated_at": _iso(created_at),
        }
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as conn:
            cur = conn.execute(
                f"INSERT INTO document_rules ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(columns.values()),
            )
            row_id = cur.lastrowid
        rule = self.get_rule(user_id, row_id)
        if rule is None:
            raise RuntimeError(f"Rule {row_id} vanished after insert")
        return rule

    def update_rule(self, user_id: str, rule_id: int, changes: dict[str, Any]) -> Optional[ChangeRule]:
        """Apply a partial update. Keys: name, description, condition, action, enabled, updated_at."""

        columns: dict[str, Any] = {}
        if "name" in changes:
            columns["name"] = changes["name"]
        if "description" in changes:
            columns["description"] = changes["description"]
        if "condition" in changes:
            columns.update(self._condition_columns(changes["condition"]))
        if "action" in changes:
            columns.update(self._action_columns(changes["action"]))
        if "enabled" in changes:
            columns["is_enabled"] = int(bool(changes["enabled"]))
        columns["updated_at"] = _iso(changes.get("updated_at") or datetime.now(timezone.utc))

        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE document_rules SET {assignments} WHERE user_id = ? AND id = ?",
                (*columns.values(), user_id, rule_id),
            )
            if cur.rowcount == 0:
                return None
        return self.get_rule(user_id, rule_id)

    def delete_rule(self, user_id: str, rule_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM document_rules WHERE user_id = ? AND id = ?", (user_id, rule_id))
            return cur.rowcount

    def get_rule(self, user_id: str, rule_id: int) -> Optional[ChangeRule]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM document_rules WHERE user_id = ? AND id = ?",
                (user_id, rule_id),
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(
        self, user_id: str, doc_token: Optional[str] = None, enabled_only: bool = False
    ) -> list[ChangeRule]:
        query = "SELECT * FROM document_rules WHERE user_id = ?"
        params: tuple[Any, ...] = (user_id,)
        if doc_token is not None:
            query += " AND doc_token = ?"
            params += (doc_token,)
        if enabled_only:
            query += " AND is_enabled = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def record_rule_execution(self, user_id: str, rule_id: int, executed_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE document_rules
                SET execution_count = execution_count + 1, last_executed_at = ?
                WHERE user_id = ? AND id = ?
                """,
                (_iso(executed_at), user_id, rule_id),
            )
