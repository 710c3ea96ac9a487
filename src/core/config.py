"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DetectionConfig:
    """Change detection settings."""

    debounce_window_ms: int = 5000


@dataclass(frozen=True)
class PollingConfig:
    """Polling loop settings.

    max_concurrent_polls bounds in-flight metadata fetches; batch_size caps how
    many documents are scheduled together before the next chunk starts.
    """

    interval_ms: int = 30000
    max_concurrent_polls: int = 100
    batch_size: int = 200
    retry_attempts: int = 3
    retry_delays_ms: tuple[int, ...] = (100, 500, 2000)
    debounce_window_ms: int = 5000
    duration_samples: int = 100


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot eligibility and retention settings."""

    max_doc_size_bytes: int = 10 * 1024 * 1024
    min_compression_ratio: float = 1.5
    retention_days: int = 90
    snapshot_on_change: bool = True
    include_doc_types: tuple[str, ...] = ("doc", "docx", "sheet", "bitable")


@dataclass(frozen=True)
class ProcessingConfig:
    """Settings for the work done after a change is detected."""

    enable_auto_snapshot: bool = True
    enable_diff: bool = True
    diff_timeout_ms: int = 5000
    max_background_tasks: int = 4
    send_diff_cards: bool = False


@dataclass(frozen=True)
class RulesConfig:
    """Rule evaluation settings."""

    enabled: bool = True
    async_mode: bool = True
    timeout_ms: int = 5000
    batch_size: int = 100
    drain_interval_ms: int = 1000
