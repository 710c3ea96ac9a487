"""Per-document change rules: validation, CRUD and evaluation (core domain).

A rule pairs one condition with one action. Evaluation loads every enabled
rule for the changed document and reports one RuleExecutionResult per rule,
whether or not its condition matched. A failing rule is captured in its own
result and never stops the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.errors import RuleActionError, RuleNotFoundError, RuleValidationError, TenantNotSetError
from core.models import (
    ACTION_AGGREGATE,
    ACTION_CREATE_TASK,
    ACTION_NOTIFY,
    ACTION_TYPES,
    ACTION_WEBHOOK,
    CHANGE_TYPES,
    CHANGE_USER_CHANGED,
    CONDITION_ANY,
    CONDITION_CHANGE_TYPE,
    CONDITION_CONTENT_MATCH,
    CONDITION_MODIFIED_BY_USER,
    CONDITION_TIME_RANGE,
    CONDITION_TYPES,
    ChangeRule,
    ConditionValue,
    DocumentChange,
    RuleAction,
    RuleCondition,
    RuleExecutionResult,
)
from core.ports import NotifierPort, RuleStoragePort, WebhookSenderPort

LOGGER = logging.getLogger(__name__)

ActionHandler = Callable[[RuleAction, DocumentChange, ChangeRule], Awaitable[Dict[str, Any]]]

_TEMPLATE_FIELD = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class RuleStatistics:
    total_rules: int
    enabled_rules: int
    disabled_rules: int
    rules_by_type: Dict[str, int] = field(default_factory=dict)


def _as_list(value: ConditionValue) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _local_now() -> datetime:
    return datetime.now().astimezone()


def validate_condition(condition: RuleCondition) -> None:
    if condition.type not in CONDITION_TYPES:
        raise RuleValidationError(f"Invalid condition type: {condition.type}")
    if condition.type == CONDITION_TIME_RANGE:
        for raw in _as_list(condition.value):
            try:
                hour = int(raw)
            except ValueError as exc:
                raise RuleValidationError(f"Invalid hour in time_range: {raw!r}") from exc
            if not 0 <= hour <= 23:
                raise RuleValidationError(f"Hour out of range in time_range: {hour}")
    elif condition.type == CONDITION_CONTENT_MATCH:
        for pattern in _as_list(condition.value):
            try:
                re.compile(pattern)
            except re.error as exc:
                raise RuleValidationError(f"Invalid content_match pattern {pattern!r}: {exc}") from exc
    elif condition.type == CONDITION_CHANGE_TYPE:
        for value in _as_list(condition.value):
            if value not in CHANGE_TYPES:
                raise RuleValidationError(f"Invalid change type in change_type: {value!r}")


def validate_action(action: RuleAction) -> None:
    if action.type not in ACTION_TYPES:
        raise RuleValidationError(f"Invalid action type: {action.type}")
    if action.type == ACTION_NOTIFY and not action.target:
        raise RuleValidationError("Notify action requires target (chat id)")
    if action.type == ACTION_WEBHOOK and not action.target:
        raise RuleValidationError("Webhook action requires target (webhook URL)")


def validate_rule(condition: RuleCondition, action: RuleAction) -> None:
    """Raise RuleValidationError for a structurally invalid rule."""

    validate_condition(condition)
    validate_action(action)


def render_template(template: str, change: DocumentChange, rule: ChangeRule) -> str:
    """Fill {{doc_token}}, {{change_type}}, {{modified_by}} and {{rule_name}}.

    Unknown placeholders are left as written.
    """

    values = {
        "doc_token": change.doc_token,
        "change_type": change.change_type,
        "modified_by": change.new_modified_user,
        "rule_name": rule.name,
    }

    def replace(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return _TEMPLATE_FIELD.sub(replace, template)


def content_matches(condition: RuleCondition, content: Optional[str]) -> bool:
    if content is None:
        return False
    flags = re.IGNORECASE if condition.case_insensitive else 0
    return any(re.search(pattern, content, flags) for pattern in _as_list(condition.value))


class RulesEngine:
    """Manages rules for one user and runs them against detected changes."""

    def __init__(
        self,
        storage: RuleStoragePort,
        webhook_sender: Optional[WebhookSenderPort] = None,
        notifier: Optional[NotifierPort] = None,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._storage = storage
        self._webhook_sender = webhook_sender
        self._notifier = notifier
        self._user_id = user_id
        self._clock = clock
        self._action_handlers: Dict[str, ActionHandler] = {
            ACTION_NOTIFY: self._handle_notify,
            ACTION_CREATE_TASK: self._handle_create_task,
            ACTION_WEBHOOK: self._handle_webhook,
            ACTION_AGGREGATE: self._handle_aggregate,
        }

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id
        LOGGER.info("Rules engine scoped to user %s", user_id)

    def _require_user(self) -> str:
        if not self._user_id:
            raise TenantNotSetError("User id not set; call set_user_id() before rule operations")
        return self._user_id

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Replace the handler for an action type (e.g. to deliver notify actions)."""

        if action_type not in ACTION_TYPES:
            raise RuleValidationError(f"Invalid action type: {action_type}")
        self._action_handlers[action_type] = handler

    # CRUD

    def create_rule(
        self,
        doc_token: str,
        name: str,
        condition: RuleCondition,
        action: RuleAction,
        description: Optional[str] = None,
    ) -> ChangeRule:
        user_id = self._require_user()
        validate_rule(condition, action)
        rule = self._storage.insert_rule(
            user_id=user_id,
            doc_token=doc_token,
            name=name,
            condition=condition,
            action=action,
            description=description,
            created_at=self._clock(),
        )
        LOGGER.info("Created rule %r (%s) for %s", name, rule.id, doc_token)
        return rule

    def update_rule(
        self,
        rule_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        condition: Optional[RuleCondition] = None,
        action: Optional[RuleAction] = None,
        enabled: Optional[bool] = None,
    ) -> ChangeRule:
        """Apply the given fields; only the parts being replaced are validated."""

        user_id = self._require_user()
        if condition is not None:
            validate_condition(condition)
        if action is not None:
            validate_action(action)

        changes: Dict[str, Any] = {"updated_at": self._clock()}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if condition is not None:
            changes["condition"] = condition
        if action is not None:
            changes["action"] = action
        if enabled is not None:
            changes["enabled"] = enabled

        updated = self._storage.update_rule(user_id, rule_id, changes)
        if updated is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        LOGGER.info("Updated rule %s", rule_id)
        return updated

    def delete_rule(self, rule_id: int) -> bool:
        user_id = self._require_user()
        removed = self._storage.delete_rule(user_id, rule_id)
        if removed:
            LOGGER.info("Deleted rule %s", rule_id)
        return removed > 0

    def get_rule(self, rule_id: int) -> Optional[ChangeRule]:
        user_id = self._require_user()
        return self._storage.get_rule(user_id, rule_id)

    def get_rules_for_doc(self, doc_token: str) -> List[ChangeRule]:
        """Enabled rules for one document."""

        user_id = self._require_user()
        return self._storage.list_rules(user_id, doc_token, enabled_only=True)

    def get_all_rules(self) -> List[ChangeRule]:
        user_id = self._require_user()
        return self._storage.list_rules(user_id)

    def get_rule_statistics(self) -> RuleStatistics:
        rules = self.get_all_rules()
        by_type: Dict[str, int] = {}
        for rule in rules:
            by_type[rule.action.type] = by_type.get(rule.action.type, 0) + 1
        enabled = sum(1 for rule in rules if rule.enabled)
        return RuleStatistics(
            total_rules=len(rules),
            enabled_rules=enabled,
            disabled_rules=len(rules) - enabled,
            rules_by_type=by_type,
        )

    def health_check(self) -> bool:
        try:
            self.get_all_rules()
        except Exception:
            LOGGER.exception("Rules storage health check failed")
            return False
        return True

    # Evaluation

    def evaluate_condition(
        self, condition: RuleCondition, change: DocumentChange, content: Optional[str] = None
    ) -> bool:
        if condition.type == CONDITION_ANY:
            return True
        if condition.type == CONDITION_MODIFIED_BY_USER:
            return change.new_modified_user in _as_list(condition.value)
        if condition.type == CONDITION_CHANGE_TYPE:
            return change.change_type in _as_list(condition.value)
        if condition.type == CONDITION_TIME_RANGE:
            hours = {int(v) for v in _as_list(condition.value)}
            return self._clock().hour in hours
        if condition.type == CONDITION_CONTENT_MATCH:
            return content_matches(condition, content)
        LOGGER.warning("Unknown condition type: %s", condition.type)
        return False

    async def evaluate_change_against_rules(
        self, change: DocumentChange, content: Optional[str] = None
    ) -> List[RuleExecutionResult]:
        """Evaluate every enabled rule of the changed document.

        content is the document text at the time of the change; without it,
        content_match conditions never match.
        """

        rules = self.get_rules_for_doc(change.doc_token)
        if not rules:
            return []

        started = time.perf_counter()
        results: List[RuleExecutionResult] = []
        for rule in rules:
            results.append(await self._evaluate_rule(rule, change, content))

        executed = sum(1 for r in results if r.action_executed)
        LOGGER.info(
            "Evaluated %s rule(s) for change %s in %sms, %s action(s) executed",
            len(rules),
            change.id,
            round((time.perf_counter() - started) * 1000),
            executed,
        )
        return results

    async def _evaluate_rule(
        self, rule: ChangeRule, change: DocumentChange, content: Optional[str]
    ) -> RuleExecutionResult:
        started = time.perf_counter()
        matched = False
        action_result: Optional[Dict[str, Any]] = None
        error: Optional[str] = None
        try:
            matched = self.evaluate_condition(rule.condition, change, content)
            if matched:
                LOGGER.info("Rule %r matched change %s", rule.name, change.id)
                action_result = await self.execute_action(rule.action, change, rule)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            LOGGER.error("Rule %s failed for change %s: %s", rule.id, change.id, error)

        executed = matched and error is None
        if executed:
            self._record_execution(rule)
        return RuleExecutionResult(
            rule_id=rule.id,
            rule_name=rule.name,
            doc_token=change.doc_token,
            change_id=change.id,
            condition_matched=matched,
            action_executed=executed,
            action_result=action_result,
            error=error,
            executed_at=self._clock(),
            execution_time_ms=round((time.perf_counter() - started) * 1000),
        )

    async def execute_action(self, action: RuleAction, change: DocumentChange, rule: ChangeRule) -> Dict[str, Any]:
        handler = self._action_handlers.get(action.type)
        if handler is None:
            raise RuleActionError(f"Unknown action type: {action.type}")
        return await handler(action, change, rule)

    def _record_execution(self, rule: ChangeRule) -> None:
        try:
            user_id = self._require_user()
            self._storage.record_rule_execution(user_id, rule.id, self._clock())
        except Exception as exc:
            LOGGER.warning("Failed to update execution stats for rule %s: %s", rule.id, exc)

    # Action handlers

    async def _handle_notify(self, action: RuleAction, change: DocumentChange, rule: ChangeRule) -> Dict[str, Any]:
        if not action.target:
            raise RuleActionError("Notify action requires target (chat id)")
        message = (
            render_template(action.template, change, rule)
            if action.template
            else f"Document {change.doc_token} was modified"
        )
        delivered = False
        if self._notifier is not None:
            await self._notifier.notify(action.target, rule.name, message)
            delivered = True
        LOGGER.info("Notify action for rule %r -> %s (delivered=%s)", rule.name, action.target, delivered)
        return {"type": ACTION_NOTIFY, "target": action.target, "message": message, "delivered": delivered}

    async def _handle_create_task(
        self, action: RuleAction, change: DocumentChange, rule: ChangeRule
    ) -> Dict[str, Any]:
        title = render_template(action.template, change, rule) if action.template else f"Action needed: {rule.name}"
        LOGGER.info("Task prepared for rule %r: %s", rule.name, title)
        return {
            "type": ACTION_CREATE_TASK,
            "title": title,
            "description": f"Triggered by change in document {change.doc_token}",
        }

    async def _handle_webhook(self, action: RuleAction, change: DocumentChange, rule: ChangeRule) -> Dict[str, Any]:
        if not action.target:
            raise RuleActionError("Webhook action requires target (webhook URL)")
        if self._webhook_sender is None:
            raise RuleActionError("No webhook sender configured")

        payload = {
            "rule": rule.name,
            "doc_token": change.doc_token,
            "change": {
                "type": change.change_type,
                "new_modified_user": change.new_modified_user,
                "new_modified_time": change.new_modified_time,
            },
            "timestamp": self._clock().isoformat(),
        }
        LOGGER.info("Calling webhook %s for rule %r", action.target, rule.name)
        status = await self._webhook_sender.post_json(action.target, payload)
        if not 200 <= status < 300:
            raise RuleActionError(f"Webhook returned {status}")
        return {"type": ACTION_WEBHOOK, "url": action.target, "status": status}

    async def _handle_aggregate(
        self, action: RuleAction, change: DocumentChange, rule: ChangeRule
    ) -> Dict[str, Any]:
        LOGGER.info("Change %s queued for aggregation under rule %r", change.id, rule.name)
        return {"type": ACTION_AGGREGATE, "aggregation_window": "1h", "queued": True}


@dataclass(frozen=True)
class RuleTemplate:
    """Ready-made rule definition, passed to RulesEngine.create_rule."""

    doc_token: str
    name: str
    condition: RuleCondition
    action: RuleAction


def notify_user_rule(doc_token: str, user_id: str, chat_id: str) -> RuleTemplate:
    return RuleTemplate(
        doc_token,
        f"Notify {user_id} of changes",
        RuleCondition(CONDITION_MODIFIED_BY_USER, user_id),
        RuleAction(ACTION_NOTIFY, target=chat_id),
    )


def business_hours_rule(doc_token: str, chat_id: str) -> RuleTemplate:
    return RuleTemplate(
        doc_token,
        "Notify during business hours (9-17)",
        RuleCondition(CONDITION_TIME_RANGE, [str(hour) for hour in range(9, 18)]),
        RuleAction(ACTION_NOTIFY, target=chat_id),
    )


def task_on_major_change_rule(doc_token: str) -> RuleTemplate:
    return RuleTemplate(
        doc_token,
        "Create task on major changes",
        RuleCondition(CONDITION_CHANGE_TYPE, CHANGE_USER_CHANGED),
        RuleAction(ACTION_CREATE_TASK, template="Review document changes for {{doc_token}}"),
    )


def webhook_rule(doc_token: str, webhook_url: str) -> RuleTemplate:
    return RuleTemplate(
        doc_token,
        "Webhook notification",
        RuleCondition(CONDITION_ANY),
        RuleAction(ACTION_WEBHOOK, target=webhook_url),
    )


def hourly_summary_rule(doc_token: str, chat_id: str) -> RuleTemplate:
    return RuleTemplate(
        doc_token,
        "Hourly change summary",
        RuleCondition(CONDITION_ANY),
        RuleAction(ACTION_AGGREGATE, target=chat_id),
    )


EXAMPLE_RULES: Dict[str, Callable[..., RuleTemplate]] = {
    "notify_user": notify_user_rule,
    "business_hours_only": business_hours_rule,
    "create_task_on_major_change": task_on_major_change_rule,
    "webhook_notification": webhook_rule,
    "hourly_summary": hourly_summary_rule,
}
