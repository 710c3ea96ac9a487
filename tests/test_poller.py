from __future__ import annotations

import asyncio
from typing import Optional

from core.config import PollingConfig
from core.models import CHANGE_NEW_DOCUMENT, CHANGE_TIME_UPDATED, DocMetadata, TrackedDocument
from core.poller import DEGRADED, HEALTHY, UNHEALTHY, DocumentPoller, build_change_notification
from core.change_detector import detect_change


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeFetcher:
    def __init__(self) -> None:
        self.metadata: dict[str, DocMetadata] = {}
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []
        self.delay = 0.0

    def set(self, doc_token: str, user: str, modified: int) -> None:
        self.metadata[doc_token] = DocMetadata(
            doc_token=doc_token,
            title=f"Title {doc_token}",
            owner_id="owner",
            last_modified_user=user,
            last_modified_time=modified,
        )

    async def fetch_metadata(self, doc_token: str, doc_type: str) -> Optional[DocMetadata]:
        self.calls.append(doc_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        remaining = self.failures.get(doc_token, 0)
        if remaining:
            self.failures[doc_token] = remaining - 1
            raise ConnectionError("platform unreachable")
        return self.metadata.get(doc_token)


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail

    async def notify(self, chat_id: str, title: str, content: str) -> None:
        if self.fail:
            raise RuntimeError("chat unavailable")
        self.sent.append((chat_id, title, content))


class RecordingHandler:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def handle_change(self, tracked, metadata, detection, notification_sent, notification_error, state_applied):
        self.calls.append((tracked, detection, notification_sent, notification_error, state_applied))


async def _no_sleep(delay: float) -> None:
    return None


def _tracked(doc_token: str = "doc1") -> TrackedDocument:
    return TrackedDocument(doc_token=doc_token, doc_type="doc", chat_id_to_notify="chat-1")


def _poller(fetcher, notifier, clock=None, handler=None, **config) -> DocumentPoller:
    return DocumentPoller(
        fetcher,
        notifier,
        PollingConfig(**config),
        change_handler=handler,
        clock=clock or FakeClock(),
        sleep=_no_sleep,
    )


def test_first_poll_notifies_new_document_and_records_state() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    notifier = FakeNotifier()
    handler = RecordingHandler()
    poller = _poller(fetcher, notifier, handler=handler)
    poller.start_tracking(_tracked())

    asyncio.run(poller.poll_all())

    assert len(notifier.sent) == 1
    chat_id, title, content = notifier.sent[0]
    assert chat_id == "chat-1"
    assert title == "Now tracking document"
    assert "Modified by: alice" in content
    state = poller.get_tracked_doc("doc1")
    assert state.last_known_time == 1000
    assert state.last_known_user == "alice"
    _, detection, sent, _, applied = handler.calls[0]
    assert detection.change_type == CHANGE_NEW_DOCUMENT
    assert sent and applied


def test_rapid_second_edit_is_debounced_and_state_kept() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    notifier = FakeNotifier()
    handler = RecordingHandler()
    clock = FakeClock()
    poller = _poller(fetcher, notifier, clock=clock, handler=handler, debounce_window_ms=5000)
    poller.start_tracking(_tracked())

    async def scenario() -> None:
        await poller.poll_all()
        fetcher.set("doc1", "alice", 1002)
        clock.now += 2
        await poller.poll_all()

    asyncio.run(scenario())

    assert len(notifier.sent) == 1
    assert poller.get_tracked_doc("doc1").last_known_time == 1000
    assert [call[1].debounced for call in handler.calls] == [False, True]
    assert [call[2] for call in handler.calls] == [True, False]


def test_edit_after_window_notifies_again() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    notifier = FakeNotifier()
    clock = FakeClock()
    poller = _poller(fetcher, notifier, clock=clock, debounce_window_ms=5000)
    poller.start_tracking(_tracked())

    async def scenario() -> None:
        await poller.poll_all()
        fetcher.set("doc1", "alice", 1010)
        clock.now += 10
        await poller.poll_all()

    asyncio.run(scenario())

    assert [title for _, title, _ in notifier.sent] == ["Now tracking document", "Document changed"]
    assert poller.get_tracked_doc("doc1").last_known_time == 1010
    assert poller.get_metrics().changes_detected == 2


def test_unchanged_document_is_not_renotified() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    notifier = FakeNotifier()
    clock = FakeClock()
    poller = _poller(fetcher, notifier, clock=clock)
    poller.start_tracking(_tracked())

    async def scenario() -> None:
        await poller.poll_all()
        clock.now += 60
        await poller.poll_all()

    asyncio.run(scenario())

    assert len(notifier.sent) == 1


def test_fetch_is_retried_with_configured_delays() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    fetcher.failures["doc1"] = 2
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    poller = DocumentPoller(fetcher, FakeNotifier(), PollingConfig(), clock=FakeClock(), sleep=record_sleep)
    poller.start_tracking(_tracked())

    asyncio.run(poller.poll_all())

    assert fetcher.calls == ["doc1", "doc1", "doc1"]
    assert delays == [0.1, 0.5]
    assert poller.get_metrics().successful_polls == 1


def test_one_failing_document_does_not_block_others() -> None:
    fetcher = FakeFetcher()
    fetcher.set("good", "alice", 1000)
    fetcher.failures["bad"] = 10
    notifier = FakeNotifier()
    poller = _poller(fetcher, notifier)
    poller.start_tracking(_tracked("good"))
    poller.start_tracking(_tracked("bad"))

    asyncio.run(poller.poll_all())

    metrics = poller.get_metrics()
    assert len(notifier.sent) == 1
    assert metrics.successful_polls == 1
    assert metrics.failed_polls == 1
    assert metrics.success_rate == 0.5
    assert poller.get_health().status == DEGRADED


def test_concurrent_fetches_are_bounded() -> None:
    fetcher = FakeFetcher()
    fetcher.delay = 0.01
    poller = _poller(fetcher, FakeNotifier(), max_concurrent_polls=3, batch_size=8)
    for index in range(20):
        token = f"doc{index}"
        fetcher.set(token, "alice", 1000)
        poller.start_tracking(_tracked(token))

    asyncio.run(poller.poll_all())

    assert len(fetcher.calls) == 20
    assert poller.max_in_flight_seen == 3


def test_every_poll_failing_is_unhealthy() -> None:
    fetcher = FakeFetcher()
    poller = _poller(fetcher, FakeNotifier())
    poller.start_tracking(_tracked())

    asyncio.run(poller.poll_all())

    health = poller.get_health()
    assert health.status == UNHEALTHY
    assert poller.get_metrics().success_rate == 0.0


def test_health_without_documents() -> None:
    poller = _poller(FakeFetcher(), FakeNotifier())

    health = poller.get_health()

    assert health.status == HEALTHY
    assert health.reason == "No documents tracked"


def test_untracked_during_poll_does_not_resurrect_state() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    handler = RecordingHandler()
    poller = _poller(fetcher, FakeNotifier(), handler=handler)
    poller.start_tracking(_tracked())

    class UntrackingFetcher:
        async def fetch_metadata(self, doc_token: str, doc_type: str):
            poller.stop_tracking(doc_token)
            return await fetcher.fetch_metadata(doc_token, doc_type)

    poller._fetcher = UntrackingFetcher()

    asyncio.run(poller.poll_all())

    assert poller.get_tracked_doc("doc1") is None
    assert handler.calls[0][4] is False


def test_failed_notification_keeps_debounce_anchor() -> None:
    fetcher = FakeFetcher()
    fetcher.set("doc1", "alice", 1000)
    handler = RecordingHandler()
    poller = _poller(fetcher, FakeNotifier(fail=True), handler=handler)
    poller.start_tracking(_tracked())

    asyncio.run(poller.poll_all())

    state = poller.get_tracked_doc("doc1")
    assert state.last_known_time == 1000
    assert state.last_notification_time == 0.0
    _, _, sent, error, _ = handler.calls[0]
    assert not sent
    assert error == "chat unavailable"
    assert poller.get_metrics().failed_notifications == 1


def test_timer_exists_only_while_documents_are_tracked() -> None:
    poller = _poller(FakeFetcher(), FakeNotifier())

    async def scenario() -> list[bool]:
        states = []
        poller.start()
        states.append(poller.is_polling)
        poller.start_tracking(_tracked())
        states.append(poller.is_polling)
        poller.stop_tracking("doc1")
        states.append(poller.is_polling)
        await poller.stop()
        return states

    assert asyncio.run(scenario()) == [False, True, False]


def test_start_tracking_twice_is_rejected() -> None:
    poller = _poller(FakeFetcher(), FakeNotifier())

    assert poller.start_tracking(_tracked()) is True
    assert poller.start_tracking(_tracked()) is False
    assert len(poller.get_tracked_docs()) == 1


def test_change_notification_body() -> None:
    metadata = DocMetadata("doc1", "Roadmap", "owner", "bob", 1_700_000_000, doc_type="sheet")
    prior = TrackedDocument("doc1", "sheet", "chat", last_known_user="bob", last_known_time=1_699_000_000)
    detection = detect_change(metadata, prior, now=1_700_000_100.0)

    title, body = build_change_notification(metadata, detection)

    assert detection.change_type == CHANGE_TIME_UPDATED
    assert title == "Document changed"
    assert body.splitlines()[0] == "Roadmap"
    assert "Document type: sheet" in body
