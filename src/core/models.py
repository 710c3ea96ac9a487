"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Union

CHANGE_TIME_UPDATED = "time_updated"
CHANGE_USER_CHANGED = "user_changed"
CHANGE_NEW_DOCUMENT = "new_document"
CHANGE_TYPES = (CHANGE_TIME_UPDATED, CHANGE_USER_CHANGED, CHANGE_NEW_DOCUMENT)

CONDITION_ANY = "any"
CONDITION_MODIFIED_BY_USER = "modified_by_user"
CONDITION_CONTENT_MATCH = "content_match"
CONDITION_TIME_RANGE = "time_range"
CONDITION_CHANGE_TYPE = "change_type"
CONDITION_TYPES = (
    CONDITION_ANY,
    CONDITION_MODIFIED_BY_USER,
    CONDITION_CONTENT_MATCH,
    CONDITION_TIME_RANGE,
    CONDITION_CHANGE_TYPE,
)

ACTION_NOTIFY = "notify"
ACTION_CREATE_TASK = "create_task"
ACTION_WEBHOOK = "webhook"
ACTION_AGGREGATE = "aggregate"
ACTION_TYPES = (ACTION_NOTIFY, ACTION_CREATE_TASK, ACTION_WEBHOOK, ACTION_AGGREGATE)

ConditionValue = Union[str, List[str], None]


@dataclass(frozen=True)
class DocMetadata:
    """Current metadata of a remote document as reported by the platform."""

    doc_token: str
    title: str
    owner_id: str
    last_modified_user: str
    # Epoch seconds.
    last_modified_time: int
    doc_type: str = "doc"
    created_time: int = 0


@dataclass
class TrackedDocument:
    """Last known state of one watched document.

    last_known_time stays None until the first observation so the detector
    can tell a brand-new watch apart from an unchanged document.
    """

    doc_token: str
    doc_type: str
    chat_id_to_notify: str
    user_id: str = ""
    last_known_user: str = ""
    last_known_time: Optional[int] = None
    # Epoch seconds of the last delivered notification, 0 when never notified.
    last_notification_time: float = 0.0
    is_active: bool = True
    title: Optional[str] = None
    id: Optional[int] = None
    notes: Optional[str] = None
    started_tracking_at: Optional[datetime] = None

    @property
    def has_observation(self) -> bool:
        return self.last_known_time is not None


@dataclass(frozen=True)
class ChangeDetectionResult:
    """Outcome of comparing fresh metadata with the recorded state."""

    has_changed: bool
    debounced: bool
    current_user: str
    current_time: int
    detected_at: float
    change_type: Optional[str] = None
    previous_user: Optional[str] = None
    previous_time: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class DocumentChange:
    """Append-only audit record of a detected transition."""

    id: int
    user_id: str
    doc_token: str
    new_modified_user: str
    new_modified_time: int
    change_type: str
    debounced: bool
    notification_sent: bool
    change_detected_at: datetime
    previous_modified_user: Optional[str] = None
    previous_modified_time: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class DocumentSnapshot:
    """Stored, compressed revision of a document's content."""

    id: int
    user_id: str
    doc_token: str
    revision_number: int
    content_hash: str
    content_size: int
    compressed_size: int
    compression_ratio: float
    modified_by: str
    modified_at: int
    stored_at: datetime


@dataclass(frozen=True)
class RuleCondition:
    type: str
    value: ConditionValue = None
    case_insensitive: bool = False


@dataclass(frozen=True)
class RuleAction:
    type: str
    target: Optional[str] = None
    template: Optional[str] = None


@dataclass(frozen=True)
class ChangeRule:
    """User-defined automation rule bound to one document."""

    id: int
    user_id: str
    doc_token: str
    name: str
    condition: RuleCondition
    action: RuleAction
    enabled: bool = True
    description: Optional[str] = None
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RuleExecutionResult:
    """Outcome of evaluating one rule against one change."""

    rule_id: int
    rule_name: str
    doc_token: str
    change_id: int
    condition_matched: bool
    action_executed: bool
    executed_at: datetime
    execution_time_ms: int
    action_result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LineDiff:
    line_number: int
    change_type: str
    content: str
    previous_content: Optional[str] = None
    context_before: str = ""
    context_after: str = ""


@dataclass(frozen=True)
class BlockDiff:
    block_id: str
    block_type: str
    change_type: str
    content: str
    previous_content: Optional[str] = None
    context_before: str = ""
    context_after: str = ""


@dataclass(frozen=True)
class DiffSummary:
    total_changes: int
    added_lines: int
    removed_lines: int
    modified_lines: int
    added_blocks: int
    removed_blocks: int
    modified_blocks: int
    percent_changed: int
    summary: str


@dataclass(frozen=True)
class DiffResult:
    previous_revision: int
    new_revision: int
    timestamp: float
    summary: DiffSummary
    compute_time_ms: int
    line_diffs: List[LineDiff] = field(default_factory=list)
    block_diffs: List[BlockDiff] = field(default_factory=list)
