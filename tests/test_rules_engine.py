from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.errors import RuleActionError, RuleNotFoundError, RuleValidationError, TenantNotSetError
from core.models import (
    ACTION_AGGREGATE,
    ACTION_CREATE_TASK,
    ACTION_NOTIFY,
    ACTION_WEBHOOK,
    CHANGE_TIME_UPDATED,
    CHANGE_USER_CHANGED,
    CONDITION_ANY,
    CONDITION_CHANGE_TYPE,
    CONDITION_CONTENT_MATCH,
    CONDITION_MODIFIED_BY_USER,
    CONDITION_TIME_RANGE,
    DocumentChange,
    RuleAction,
    RuleCondition,
)
from core.rules_engine import EXAMPLE_RULES, RulesEngine, render_template, validate_rule


class FakeClock:
    def __init__(self, hour: int = 10) -> None:
        self.now = datetime(2024, 3, 4, hour, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeWebhookSender:
    def __init__(self, statuses=None, fail_urls=()) -> None:
        self.statuses = statuses or {}
        self.fail_urls = set(fail_urls)
        self.calls: list[tuple[str, dict]] = []

    async def post_json(self, url: str, payload: dict) -> int:
        self.calls.append((url, payload))
        if url in self.fail_urls:
            raise ConnectionError("connection refused")
        return self.statuses.get(url, 200)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def notify(self, chat_id: str, title: str, content: str) -> None:
        self.sent.append((chat_id, title, content))


def _engine(tmp_path, webhook_sender=None, notifier=None, clock=None) -> RulesEngine:
    storage = SQLiteStorage(str(tmp_path / "docwatch.db"))
    storage.init_db()
    return RulesEngine(storage, webhook_sender=webhook_sender, notifier=notifier, user_id="u1", clock=clock or FakeClock())


def _change(change_type: str = CHANGE_USER_CHANGED, user: str = "alice", doc_token: str = "doc1") -> DocumentChange:
    return DocumentChange(
        id=7,
        user_id="u1",
        doc_token=doc_token,
        new_modified_user=user,
        new_modified_time=1_700_000_000,
        change_type=change_type,
        debounced=False,
        notification_sent=True,
        change_detected_at=datetime(2024, 3, 4, tzinfo=timezone.utc),
    )


@pytest.mark.parametrize(
    "condition, action, message",
    [
        (RuleCondition("sometimes"), RuleAction(ACTION_AGGREGATE), "Invalid condition type"),
        (RuleCondition(CONDITION_ANY), RuleAction("email"), "Invalid action type"),
        (RuleCondition(CONDITION_ANY), RuleAction(ACTION_NOTIFY), "requires target"),
        (RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK), "requires target"),
        (RuleCondition(CONDITION_TIME_RANGE, ["24"]), RuleAction(ACTION_AGGREGATE), "out of range"),
        (RuleCondition(CONDITION_TIME_RANGE, ["noon"]), RuleAction(ACTION_AGGREGATE), "Invalid hour"),
        (RuleCondition(CONDITION_CONTENT_MATCH, "(unclosed"), RuleAction(ACTION_AGGREGATE), "Invalid content_match"),
        (RuleCondition(CONDITION_CHANGE_TYPE, "user_change"), RuleAction(ACTION_AGGREGATE), "Invalid change type"),
        (
            RuleCondition(CONDITION_CHANGE_TYPE, [CHANGE_USER_CHANGED, "edited"]),
            RuleAction(ACTION_AGGREGATE),
            "Invalid change type",
        ),
    ],
)
def test_invalid_rules_are_rejected(condition, action, message) -> None:
    with pytest.raises(RuleValidationError, match=message):
        validate_rule(condition, action)


def test_invalid_rule_is_not_persisted(tmp_path) -> None:
    engine = _engine(tmp_path)

    with pytest.raises(RuleValidationError):
        engine.create_rule("doc1", "broken", RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK))

    assert engine.get_all_rules() == []


def test_crud_round_trip(tmp_path) -> None:
    engine = _engine(tmp_path)
    rule = engine.create_rule(
        "doc1",
        "Watch bob",
        RuleCondition(CONDITION_MODIFIED_BY_USER, ["bob", "carol"]),
        RuleAction(ACTION_NOTIFY, target="chat-9", template="{{modified_by}} edited"),
        description="bob and carol",
    )

    assert rule.enabled
    assert engine.get_rule(rule.id).condition.value == ["bob", "carol"]

    updated = engine.update_rule(rule.id, name="Watch bob only", enabled=False)
    assert updated.name == "Watch bob only"
    assert not updated.enabled
    assert updated.action.template == "{{modified_by}} edited"
    assert engine.get_rules_for_doc("doc1") == []

    assert engine.delete_rule(rule.id) is True
    assert engine.delete_rule(rule.id) is False
    assert engine.get_rule(rule.id) is None


def test_update_validates_only_replaced_parts(tmp_path) -> None:
    engine = _engine(tmp_path)
    rule = engine.create_rule("doc1", "Any", RuleCondition(CONDITION_ANY), RuleAction(ACTION_AGGREGATE))

    with pytest.raises(RuleValidationError):
        engine.update_rule(rule.id, action=RuleAction(ACTION_NOTIFY))
    with pytest.raises(RuleNotFoundError):
        engine.update_rule(999, name="ghost")

    updated = engine.update_rule(rule.id, condition=RuleCondition(CONDITION_CHANGE_TYPE, CHANGE_TIME_UPDATED))
    assert updated.condition.type == CONDITION_CHANGE_TYPE
    assert updated.action.type == ACTION_AGGREGATE


def test_unmatched_change_type_skips_webhook(tmp_path) -> None:
    sender = FakeWebhookSender()
    engine = _engine(tmp_path, webhook_sender=sender)
    engine.create_rule(
        "doc1",
        "User changes",
        RuleCondition(CONDITION_CHANGE_TYPE, CHANGE_USER_CHANGED),
        RuleAction(ACTION_WEBHOOK, target="https://hooks.example.com/a"),
    )

    results = asyncio.run(engine.evaluate_change_against_rules(_change(CHANGE_TIME_UPDATED)))

    assert len(results) == 1
    assert results[0].condition_matched is False
    assert results[0].action_executed is False
    assert sender.calls == []


def test_matching_webhook_posts_change_payload(tmp_path) -> None:
    sender = FakeWebhookSender()
    engine = _engine(tmp_path, webhook_sender=sender)
    rule = engine.create_rule(
        "doc1", "User changes", RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK, target="https://h/a")
    )

    results = asyncio.run(engine.evaluate_change_against_rules(_change()))

    url, payload = sender.calls[0]
    assert url == "https://h/a"
    assert payload["rule"] == "User changes"
    assert payload["doc_token"] == "doc1"
    assert payload["change"] == {
        "type": CHANGE_USER_CHANGED,
        "new_modified_user": "alice",
        "new_modified_time": 1_700_000_000,
    }
    assert results[0].action_result == {"type": ACTION_WEBHOOK, "url": "https://h/a", "status": 200}
    stored = engine.get_rule(rule.id)
    assert stored.execution_count == 1
    assert stored.last_executed_at is not None


def test_failing_rule_does_not_stop_the_next_one(tmp_path) -> None:
    sender = FakeWebhookSender(statuses={"https://h/a": 500}, fail_urls={"https://h/b"})
    engine = _engine(tmp_path, webhook_sender=sender)
    engine.create_rule("doc1", "A", RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK, target="https://h/a"))
    engine.create_rule("doc1", "B", RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK, target="https://h/b"))
    engine.create_rule("doc1", "C", RuleCondition(CONDITION_ANY), RuleAction(ACTION_CREATE_TASK))

    results = asyncio.run(engine.evaluate_change_against_rules(_change()))

    assert [r.rule_name for r in results] == ["A", "B", "C"]
    assert results[0].condition_matched and not results[0].action_executed
    assert results[0].error == "Webhook returned 500"
    assert results[1].error == "connection refused"
    assert results[2].action_executed
    assert results[2].action_result["title"] == "Action needed: C"


def test_webhook_without_sender_is_an_action_error(tmp_path) -> None:
    engine = _engine(tmp_path)
    rule = engine.create_rule("doc1", "A", RuleCondition(CONDITION_ANY), RuleAction(ACTION_WEBHOOK, target="https://h"))

    with pytest.raises(RuleActionError):
        asyncio.run(engine.execute_action(rule.action, _change(), rule))


def test_modified_by_user_accepts_a_list(tmp_path) -> None:
    engine = _engine(tmp_path)
    condition = RuleCondition(CONDITION_MODIFIED_BY_USER, ["bob", "carol"])

    assert engine.evaluate_condition(condition, _change(user="carol"))
    assert not engine.evaluate_condition(condition, _change(user="alice"))
    assert engine.evaluate_condition(RuleCondition(CONDITION_MODIFIED_BY_USER, "alice"), _change(user="alice"))


def test_time_range_uses_the_current_hour(tmp_path) -> None:
    clock = FakeClock(hour=8)
    engine = _engine(tmp_path, clock=clock)
    condition = RuleCondition(CONDITION_TIME_RANGE, [str(hour) for hour in range(9, 18)])

    assert not engine.evaluate_condition(condition, _change())
    clock.now = clock.now.replace(hour=9)
    assert engine.evaluate_condition(condition, _change())


def test_content_match_needs_content(tmp_path) -> None:
    engine = _engine(tmp_path)
    condition = RuleCondition(CONDITION_CONTENT_MATCH, r"\bURGENT\b", case_insensitive=True)

    assert not engine.evaluate_condition(condition, _change())
    assert engine.evaluate_condition(condition, _change(), content="this is urgent now")
    assert not engine.evaluate_condition(RuleCondition(CONDITION_CONTENT_MATCH, "URGENT"), _change(), "urgent")


def test_notify_action_renders_template_and_delivers(tmp_path) -> None:
    notifier = FakeNotifier()
    engine = _engine(tmp_path, notifier=notifier)
    engine.create_rule(
        "doc1",
        "Ping",
        RuleCondition(CONDITION_ANY),
        RuleAction(ACTION_NOTIFY, target="chat-9", template="{{modified_by}} changed {{doc_token}} ({{change_type}})"),
    )

    results = asyncio.run(engine.evaluate_change_against_rules(_change()))

    assert notifier.sent == [("chat-9", "Ping", "alice changed doc1 (user_changed)")]
    assert results[0].action_result["delivered"] is True


def test_notify_without_notifier_is_not_delivered(tmp_path) -> None:
    engine = _engine(tmp_path)
    rule = engine.create_rule("doc1", "Ping", RuleCondition(CONDITION_ANY), RuleAction(ACTION_NOTIFY, target="c"))

    result = asyncio.run(engine.execute_action(rule.action, _change(), rule))

    assert result["message"] == "Document doc1 was modified"
    assert result["delivered"] is False


def test_custom_action_handler_replaces_default(tmp_path) -> None:
    engine = _engine(tmp_path)
    seen = []

    async def handler(action, change, rule):
        seen.append(rule.name)
        return {"type": ACTION_AGGREGATE, "custom": True}

    engine.register_action_handler(ACTION_AGGREGATE, handler)
    engine.create_rule("doc1", "Digest", RuleCondition(CONDITION_ANY), RuleAction(ACTION_AGGREGATE))

    results = asyncio.run(engine.evaluate_change_against_rules(_change()))

    assert seen == ["Digest"]
    assert results[0].action_result == {"type": ACTION_AGGREGATE, "custom": True}
    with pytest.raises(RuleValidationError):
        engine.register_action_handler("email", handler)


def test_rules_of_other_documents_are_ignored(tmp_path) -> None:
    engine = _engine(tmp_path)
    engine.create_rule("doc2", "Other", RuleCondition(CONDITION_ANY), RuleAction(ACTION_AGGREGATE))

    assert asyncio.run(engine.evaluate_change_against_rules(_change())) == []


def test_render_template_keeps_unknown_placeholders(tmp_path) -> None:
    engine = _engine(tmp_path)
    rule = engine.create_rule("doc1", "R", RuleCondition(CONDITION_ANY), RuleAction(ACTION_AGGREGATE))

    assert render_template("{{rule_name}}: {{ missing }}", _change(), rule) == "R: {{ missing }}"


def test_example_rules_are_valid(tmp_path) -> None:
    engine = _engine(tmp_path)
    templates = [
        EXAMPLE_RULES["notify_user"]("doc1", "bob", "chat-1"),
        EXAMPLE_RULES["business_hours_only"]("doc1", "chat-1"),
        EXAMPLE_RULES["create_task_on_major_change"]("doc1"),
        EXAMPLE_RULES["webhook_notification"]("doc1", "https://h"),
        EXAMPLE_RULES["hourly_summary"]("doc1", "chat-1"),
    ]

    for template in templates:
        engine.create_rule(template.doc_token, template.name, template.condition, template.action)

    stats = engine.get_rule_statistics()
    assert stats.total_rules == 5
    assert stats.enabled_rules == 5
    assert stats.rules_by_type == {ACTION_NOTIFY: 2, ACTION_CREATE_TASK: 1, ACTION_WEBHOOK: 1, ACTION_AGGREGATE: 1}
    assert templates[1].condition.value[0] == "9"
    assert templates[1].condition.value[-1] == "17"
    assert engine.health_check()


def test_operations_require_a_user(tmp_path) -> None:
    storage = SQLiteStorage(str(tmp_path / "docwatch.db"))
    storage.init_db()
    engine = RulesEngine(storage)

    with pytest.raises(TenantNotSetError):
        engine.get_all_rules()
    assert not engine.health_check()
