"""Static configuration for docwatch.

All user-editable settings (polling, snapshots, rules, notifications) live in
a single JSON file for quick edits without touching Python. Secrets stay in
the environment (.env).
"""

import json
import os

from core.config import PollingConfig, ProcessingConfig, RulesConfig, SnapshotConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# DOCWATCH_CONFIG points at an alternative config file (absolute or relative
# to the project root).
CONFIG_PATH = os.path.join(PROJECT_ROOT, os.getenv("DOCWATCH_CONFIG", "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH} (copy config.example.json to start)")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Every row in the database is scoped to this user id.
USER_ID = str(_CONFIG.get("user_id", "default"))

# Where to store the SQLite database.
DB_PATH = _resolve_path(_CONFIG.get("db_path", "docwatch.db"))

_polling = _CONFIG.get("polling", {})
_polling_defaults = PollingConfig()
POLLING = PollingConfig(
    interval_ms=int(_polling.get("interval_ms", _polling_defaults.interval_ms)),
    max_concurrent_polls=int(_polling.get("max_concurrent_polls", _polling_defaults.max_concurrent_polls)),
    batch_size=int(_polling.get("batch_size", _polling_defaults.batch_size)),
    retry_attempts=int(_polling.get("retry_attempts", _polling_defaults.retry_attempts)),
    retry_delays_ms=tuple(int(v) for v in _polling.get("retry_delays_ms", _polling_defaults.retry_delays_ms)),
    debounce_window_ms=int(_polling.get("debounce_window_ms", _polling_defaults.debounce_window_ms)),
)

_snapshots = _CONFIG.get("snapshots", {})
_snapshot_defaults = SnapshotConfig()
SNAPSHOTS = SnapshotConfig(
    max_doc_size_bytes=int(_snapshots.get("max_doc_size_bytes", _snapshot_defaults.max_doc_size_bytes)),
    min_compression_ratio=float(_snapshots.get("min_compression_ratio", _snapshot_defaults.min_compression_ratio)),
    retention_days=int(_snapshots.get("retention_days", _snapshot_defaults.retention_days)),
    snapshot_on_change=bool(_snapshots.get("snapshot_on_change", _snapshot_defaults.snapshot_on_change)),
    include_doc_types=tuple(_snapshots.get("include_doc_types", _snapshot_defaults.include_doc_types)),
)

_processing = _CONFIG.get("processing", {})
_processing_defaults = ProcessingConfig()
PROCESSING = ProcessingConfig(
    enable_auto_snapshot=bool(_processing.get("enable_auto_snapshot", _processing_defaults.enable_auto_snapshot)),
    enable_diff=bool(_processing.get("enable_diff", _processing_defaults.enable_diff)),
    diff_timeout_ms=int(_processing.get("diff_timeout_ms", _processing_defaults.diff_timeout_ms)),
    max_background_tasks=int(_processing.get("max_background_tasks", _processing_defaults.max_background_tasks)),
    send_diff_cards=bool(_processing.get("send_diff_cards", _processing_defaults.send_diff_cards)),
)

_rules = _CONFIG.get("rules", {})
_rules_defaults = RulesConfig()
RULES = RulesConfig(
    enabled=bool(_rules.get("enabled", _rules_defaults.enabled)),
    async_mode=bool(_rules.get("async_mode", _rules_defaults.async_mode)),
    timeout_ms=int(_rules.get("timeout_ms", _rules_defaults.timeout_ms)),
    batch_size=int(_rules.get("batch_size", _rules_defaults.batch_size)),
    drain_interval_ms=int(_rules.get("drain_interval_ms", _rules_defaults.drain_interval_ms)),
)

# Notification method switches adapters without changing core logic.
# - "bot": Telegram Bot API (needs BOT_API in .env)
# - "client": Telethon user session (needs API_ID/API_HASH in .env)
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("notification_method", "bot")
# Used when a watch is created without an explicit chat id.
DEFAULT_CHAT_ID = _notifications.get("default_chat_id")

_docs_api = _CONFIG.get("docs_api", {})
DOCS_API_BASE_URL = _docs_api.get("base_url", "https://open.feishu.cn")
DOCS_API_TIMEOUT_S = float(_docs_api.get("timeout_s", 10))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
