from __future__ import annotations

from adapters.sqlite_storage import SQLiteStorage
from core.ledger import DocumentLedger
from core.poller import DocumentPoller
from core.tracker import DocumentTracker


class NullFetcher:
    async def fetch_metadata(self, doc_token: str, doc_type: str):
        return None


class NullNotifier:
    async def notify(self, chat_id: str, title: str, content: str) -> None:
        return None


def _setup(tmp_path):
    storage = SQLiteStorage(str(tmp_path / "docwatch.db"))
    storage.init_db()
    ledger = DocumentLedger(storage, user_id="u1")
    poller = DocumentPoller(NullFetcher(), NullNotifier())
    return ledger, poller, DocumentTracker(ledger, poller)


def test_start_and_stop_keep_ledger_and_poller_in_step(tmp_path) -> None:
    ledger, poller, tracker = _setup(tmp_path)

    tracked = tracker.start_tracking("doc1", "sheet", "chat-1", title="Budget")

    assert tracked.id is not None
    assert poller.get_tracked_doc("doc1").title == "Budget"
    assert tracker.stop_tracking("doc1") is True
    assert poller.get_tracked_doc("doc1") is None
    assert ledger.get_tracked_doc("doc1") is None
    assert tracker.stop_tracking("doc1") is False


def test_restore_registers_persisted_watches(tmp_path) -> None:
    ledger, poller, tracker = _setup(tmp_path)
    ledger.start_tracking("doc1", "doc", "chat-1")
    ledger.start_tracking("doc2", "doc", "chat-1")
    ledger.update_tracked_state("doc1", "alice", 1000, 1_700_000_000.0)

    restored = tracker.restore()

    assert [doc.doc_token for doc in restored] == ["doc1", "doc2"]
    assert poller.get_tracked_doc("doc1").last_known_time == 1000
    assert tracker.restore() == []


def test_sync_picks_up_rows_changed_elsewhere(tmp_path) -> None:
    ledger, poller, tracker = _setup(tmp_path)
    tracker.start_tracking("doc1", "doc", "chat-1")
    ledger.start_tracking("doc2", "doc", "chat-1")
    ledger.stop_tracking("doc1")

    assert tracker.sync() == (1, 1)
    assert [doc.doc_token for doc in poller.get_tracked_docs()] == ["doc2"]
    assert tracker.sync() == (0, 0)
