"""Application entry point for the docwatch document watcher."""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.docs_api_client import DocsApiClient
from adapters.http_webhook import UrllibWebhookSender
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_bot_notifier import TelegramBotNotifier
from adapters.telegram_notifier import TelegramClientNotifier
from client import authorize, build_client
from core.background import BackgroundTasks
from core.errors import RuleValidationError
from core.ledger import DocumentLedger
from core.models import RuleAction, RuleCondition
from core.poller import DocumentPoller
from core.processor import ChangeProcessor
from core.rule_queue import RuleQueue
from core.rules_engine import RulesEngine
from core.snapshots import SnapshotService
from core.tracker import DocumentTracker

NAME = "DOCWATCH"
FONT = "tarty-1"

# How often the running watcher picks up watches added from another process.
_SYNC_INTERVAL_S = 30


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/docwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _build_docs_client() -> DocsApiClient:
    load_dotenv()
    app_id = os.getenv("DOCS_APP_ID")
    app_secret = os.getenv("DOCS_APP_SECRET")
    if not app_id or not app_secret:
        raise RuntimeError("Missing DOCS_APP_ID or DOCS_APP_SECRET in environment")
    return DocsApiClient(app_id, app_secret, base_url=settings.DOCS_API_BASE_URL, timeout_s=settings.DOCS_API_TIMEOUT_S)


async def _build_notifier():
    """Select the notification adapter; returns (notifier, telethon client or None)."""

    if settings.NOTIFICATION_METHOD == "bot":
        load_dotenv()
        bot_token = os.getenv("BOT_API")
        if not bot_token:
            raise RuntimeError("BOT_API is required when notification_method=bot")
        default_chat = str(settings.DEFAULT_CHAT_ID) if settings.DEFAULT_CHAT_ID else None
        return TelegramBotNotifier(bot_token=bot_token, default_chat_id=default_chat), None
    if settings.NOTIFICATION_METHOD == "client":
        # Built inside the running loop so Telethon binds to it.
        client = build_client()
        await client.connect()
        await authorize(client)
        return TelegramClientNotifier(client), client
    raise RuntimeError("notification_method must be 'bot' or 'client'")


async def _serve() -> None:
    logger = logging.getLogger(__name__)
    logger.info("Starting docwatch for user %s", settings.USER_ID)

    storage = _open_storage()
    ledger = DocumentLedger(storage, user_id=settings.USER_ID)
    snapshots = SnapshotService(storage, settings.SNAPSHOTS, user_id=settings.USER_ID)
    removed = snapshots.prune_old_snapshots()
    logger.info("Snapshot cleanup removed %s snapshot(s)", removed)

    docs_client = _build_docs_client()
    notifier, telegram_client = await _build_notifier()
    logger.info("Selected notification method - %s", settings.NOTIFICATION_METHOD)

    engine = RulesEngine(storage, webhook_sender=UrllibWebhookSender(), notifier=notifier, user_id=settings.USER_ID)
    rule_queue = RuleQueue(engine, settings.RULES)
    processor = ChangeProcessor(
        ledger,
        snapshots=snapshots,
        rule_queue=rule_queue,
        content_fetcher=docs_client,
        config=settings.PROCESSING,
        rules_config=settings.RULES,
        background=BackgroundTasks(settings.PROCESSING.max_background_tasks),
        diff_notifier=notifier,
    )
    poller = DocumentPoller(docs_client, notifier, settings.POLLING, change_handler=processor)
    tracker = DocumentTracker(ledger, poller)
    tracker.restore()

    poller.start()
    if settings.RULES.enabled and settings.RULES.async_mode:
        rule_queue.start()
    logger.info("Watching %s document(s). Press Ctrl+C to stop.", len(poller.get_tracked_docs()))

    # Explicit lifecycle management makes start/shutdown behavior obvious.
    try:
        while True:
            await asyncio.sleep(_SYNC_INTERVAL_S)
            try:
                tracker.sync()
            except Exception:
                logger.exception("Failed to sync tracked documents")
    finally:
        await poller.stop()
        await rule_queue.stop()
        await rule_queue.drain(max_wait_s=settings.RULES.timeout_ms / 1000)
        await processor.join()
        if telegram_client is not None:
            await telegram_client.disconnect()
        logger.info("docwatch stopped")


def _run() -> None:
    _print_banner()
    _configure_logging()
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass


def _ledger() -> tuple[SQLiteStorage, DocumentLedger]:
    storage = _open_storage()
    return storage, DocumentLedger(storage, user_id=settings.USER_ID)


def _watch(args: argparse.Namespace) -> None:
    chat_id = args.chat or settings.DEFAULT_CHAT_ID
    if not chat_id:
        raise SystemExit("A chat id is required (--chat or notifications.default_chat_id)")
    _, ledger = _ledger()
    tracked = ledger.start_tracking(args.doc_token, args.type, str(chat_id), title=args.title, notes=args.notes)
    print(f"Watching {tracked.doc_token} ({tracked.doc_type}) -> {tracked.chat_id_to_notify}")


def _unwatch(args: argparse.Namespace) -> None:
    _, ledger = _ledger()
    if ledger.stop_tracking(args.doc_token):
        print(f"Stopped watching {args.doc_token}")
    else:
        print(f"{args.doc_token} is not being watched")


def _format_epoch(value: Optional[int]) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _status(args: argparse.Namespace) -> None:
    storage, ledger = _ledger()
    snapshots = SnapshotService(storage, settings.SNAPSHOTS, user_id=settings.USER_ID)
    docs = ledger.get_tracked_docs()
    if not docs:
        print("No documents are being watched.")
    for tracked in docs:
        stats = ledger.get_change_stats(tracked.doc_token)
        label = tracked.title or tracked.doc_token
        print(f"{label} | {tracked.doc_type} | chat {tracked.chat_id_to_notify}")
        print(f"  last change: {_format_epoch(tracked.last_known_time)} by {tracked.last_known_user or '-'}")
        print(
            f"  changes: {stats.total_changes} total, {stats.notified_changes} notified, "
            f"{stats.debounced_changes} debounced"
        )
    print(f"Snapshots: {snapshots.get_snapshot_stats().status_message}")


def _prune(args: argparse.Namespace) -> None:
    storage = _open_storage()
    snapshots = SnapshotService(storage, settings.SNAPSHOTS, user_id=settings.USER_ID)
    removed = snapshots.prune_old_snapshots(args.doc)
    print(f"Removed {removed} snapshot(s) older than {settings.SNAPSHOTS.retention_days} days")


def _history(args: argparse.Namespace) -> None:
    storage, ledger = _ledger()
    snapshots = SnapshotService(storage, settings.SNAPSHOTS, user_id=settings.USER_ID)
    processor = ChangeProcessor(ledger, snapshots=snapshots, config=settings.PROCESSING)
    entries = processor.history_with_diffs(args.doc_token, limit=args.limit)
    if not entries:
        print("No snapshot history with diffs yet.")
    for entry in entries:
        print(f"rev {entry.snapshot.revision_number} by {entry.snapshot.modified_by}: {entry.diff_summary}")


def _rules_engine() -> RulesEngine:
    return RulesEngine(_open_storage(), user_id=settings.USER_ID)


def _rule_add(args: argparse.Namespace) -> None:
    value = None
    if args.value:
        value = args.value[0] if len(args.value) == 1 else list(args.value)
    try:
        rule = _rules_engine().create_rule(
            args.doc_token,
            args.name,
            RuleCondition(args.condition, value, case_insensitive=args.ignore_case),
            RuleAction(args.action, target=args.target, template=args.template),
            description=args.description,
        )
    except RuleValidationError as exc:
        raise SystemExit(f"Invalid rule: {exc}") from exc
    print(f"Created rule {rule.id}: {rule.name}")


def _rules(args: argparse.Namespace) -> None:
    engine = _rules_engine()
    rules = engine.get_all_rules()
    if args.doc:
        rules = [rule for rule in rules if rule.doc_token == args.doc]
    if not rules:
        print("No rules defined.")
    for rule in rules:
        state = "on" if rule.enabled else "off"
        print(
            f"{rule.id}. [{state}] {rule.name} | {rule.doc_token} | "
            f"{rule.condition.type}={rule.condition.value} -> {rule.action.type} {rule.action.target or ''}".rstrip()
        )
    stats = engine.get_rule_statistics()
    print(f"{stats.total_rules} rule(s), {stats.enabled_rules} enabled")


def _rule_delete(args: argparse.Namespace) -> None:
    if _rules_engine().delete_rule(args.rule_id):
        print(f"Deleted rule {args.rule_id}")
    else:
        print(f"Rule {args.rule_id} not found")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="docwatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the watcher")

    watch = subparsers.add_parser("watch", help="Start watching a document")
    watch.add_argument("doc_token")
    watch.add_argument("--type", default="doc", help="doc, docx, sheet or bitable")
    watch.add_argument("--chat", help="Chat id that receives notifications")
    watch.add_argument("--title")
    watch.add_argument("--notes")

    unwatch = subparsers.add_parser("unwatch", help="Stop watching a document")
    unwatch.add_argument("doc_token")

    subparsers.add_parser("status", help="Show watched documents and change counts")

    prune = subparsers.add_parser("prune", help="Delete snapshots past the retention window")
    prune.add_argument("--doc", help="Only prune this document")

    history = subparsers.add_parser("history", help="Show diffs between stored snapshots")
    history.add_argument("doc_token")
    history.add_argument("--limit", type=int, default=10)

    rule_add = subparsers.add_parser("rule-add", help="Create a change rule")
    rule_add.add_argument("doc_token")
    rule_add.add_argument("--name", required=True)
    rule_add.add_argument("--condition", default="any")
    rule_add.add_argument("--value", action="append", help="Condition value (repeatable)")
    rule_add.add_argument("--ignore-case", action="store_true", help="Case-insensitive content_match")
    rule_add.add_argument("--action", default="notify")
    rule_add.add_argument("--target")
    rule_add.add_argument("--template")
    rule_add.add_argument("--description")

    rules = subparsers.add_parser("rules", help="List change rules")
    rules.add_argument("--doc", help="Only rules for this document")

    rule_delete = subparsers.add_parser("rule-delete", help="Delete a change rule")
    rule_delete.add_argument("rule_id", type=int)

    commands = {
        "watch": _watch,
        "unwatch": _unwatch,
        "status": _status,
        "prune": _prune,
        "history": _history,
        "rule-add": _rule_add,
        "rules": _rules,
        "rule-delete": _rule_delete,
    }

    args = parser.parse_args(argv)
    handler = commands.get(args.command)
    if handler is None:
        _run()
        return
    _configure_logging()
    handler(args)


if __name__ == "__main__":
    main()
