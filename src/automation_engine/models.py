from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
import uuid

from src.automation_engine.errors import ConfigurationError, QueueError
from src.config import parse_hhmm


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_trace_id() -> str:
    return uuid.uuid4().hex[:12]


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    BUTTON_CLICK = "button_click"
    FLOW_START = "flow_start"


class ActionType(str, Enum):
    SEND_MESSAGE = "send_message"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    DELAY = "delay"
    CONDITION = "condition"
    WEBHOOK = "webhook"
    TRANSFER_HUMAN = "transfer_human"


class JobType(str, Enum):
    SEND_MESSAGE = "send_message"
    AUTOMATION_ACTION = "automation_action"
    CAMPAIGN_MESSAGE = "campaign_message"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WalkState(str, Enum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    DONE = "done"
    ABORTED = "aborted"


DELAY_UNIT_SECONDS: Mapping[str, int] = MappingProxyType(
    {
        "seconds": 1,
        "minutes": 60,
        "hours": 60 * 60,
        "days": 24 * 60 * 60,
    }
)

CONDITION_OPERATORS = frozenset({"equals", "contains", "greater_than", "less_than"})
WEBHOOK_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
SCHEDULE_KINDS = frozenset({"daily", "weekly", "monthly", "once"})


@dataclass(frozen=True)
class AutomationAction:
    id: str
    type: ActionType
    config: Mapping[str, Any] = field(default_factory=dict)
    next_action_id: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AutomationAction:
        if not isinstance(payload, Mapping):
            raise ConfigurationError(f"action must be an object, got {payload!r}")
        action_id = str(payload.get("id", "")).strip()
        if not action_id:
            raise ConfigurationError("action id is required")
        raw_type = str(payload.get("type", "")).strip()
        try:
            action_type = ActionType(raw_type)
        except ValueError as exc:
            raise ConfigurationError(
                f"unknown action type {raw_type!r}", action_id=action_id
            ) from exc
        config = payload.get("config") or {}
        if not isinstance(config, Mapping):
            raise ConfigurationError("action config must be an object", action_id=action_id)
        next_raw = payload.get("next_action_id")
        next_action_id = str(next_raw).strip() if next_raw not in (None, "") else None
        return cls(
            id=action_id,
            type=action_type,
            config=MappingProxyType(dict(config)),
            next_action_id=next_action_id,
        )

    def branch_ids(self) -> tuple[str, ...]:
        if self.type is not ActionType.CONDITION:
            return ()
        condition = self.config.get("condition") or {}
        ids = list(condition.get("true_actions") or []) + list(
            condition.get("false_actions") or []
        )
        return tuple(str(item) for item in ids)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "config": dict(self.config),
        }
        if self.next_action_id is not None:
            payload["next_action_id"] = self.next_action_id
        return payload


@dataclass(frozen=True)
class AutomationDefinition:
    id: int
    owner_id: int
    name: str
    trigger_type: TriggerType
    trigger_config: Mapping[str, Any]
    actions: Mapping[str, AutomationAction]
    is_active: bool = True
    description: str = ""

    @property
    def entry_action_id(self) -> str | None:
        return next(iter(self.actions), None)

    def unreachable_action_ids(self) -> list[str]:
        """Action ids never visited when walking from the entry action."""
        seen: set[str] = set()
        pending = [self.entry_action_id] if self.entry_action_id else []
        while pending:
            action_id = pending.pop()
            if action_id in seen or action_id not in self.actions:
                continue
            seen.add(action_id)
            action = self.actions[action_id]
            pending.extend(action.branch_ids())
            if action.next_action_id is not None:
                pending.append(action.next_action_id)
        return [action_id for action_id in self.actions if action_id not in seen]

    def action(self, action_id: str) -> AutomationAction:
        try:
            return self.actions[action_id]
        except KeyError:
            raise ConfigurationError(
                f"action {action_id!r} not found",
                automation_id=self.id,
                action_id=action_id,
            ) from None

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type.value,
            "trigger_config": dict(self.trigger_config),
            "actions": [action.to_dict() for action in self.actions.values()],
            "is_active": self.is_active,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> AutomationDefinition:
        """Parse a stored automation and validate its action chain.

        Raises ConfigurationError for unknown trigger or action types,
        duplicate action ids, dangling references, malformed action config
        and chains that loop back on themselves. Structural problems (an
        action that is not an object, a non-numeric id) are reported the
        same way.
        """
        automation_id = _parse_int(record, "id")
        raw_trigger = str(record.get("trigger_type", "")).strip()
        try:
            trigger_type = TriggerType(raw_trigger)
        except ValueError as exc:
            raise ConfigurationError(
                f"unknown trigger type {raw_trigger!r}", automation_id=automation_id
            ) from exc

        raw_actions = record.get("actions") or []
        if not isinstance(raw_actions, (list, tuple)):
            raise ConfigurationError("actions must be a list", automation_id=automation_id)
        actions: dict[str, AutomationAction] = {}
        for item in raw_actions:
            try:
                action = AutomationAction.from_dict(item)
            except ConfigurationError as exc:
                exc.automation_id = automation_id
                raise
            if action.id in actions:
                raise ConfigurationError(
                    f"duplicate action id {action.id!r}",
                    automation_id=automation_id,
                    action_id=action.id,
                )
            actions[action.id] = action

        trigger_config = record.get("trigger_config") or {}
        if not isinstance(trigger_config, Mapping):
            raise ConfigurationError(
                "trigger_config must be an object", automation_id=automation_id
            )
        definition = cls(
            id=automation_id,
            owner_id=_parse_int(record, "owner_id", automation_id=automation_id),
            name=str(record.get("name", "")).strip() or f"automation-{automation_id}",
            trigger_type=trigger_type,
            trigger_config=MappingProxyType(dict(trigger_config)),
            actions=MappingProxyType(actions),
            is_active=bool(record.get("is_active", True)),
            description=str(record.get("description") or ""),
        )
        validate_definition(definition)
        return definition


def _parse_int(
    record: Mapping[str, Any], key: str, *, automation_id: int | None = None
) -> int:
    raw = record.get(key)
    if isinstance(raw, bool):
        raw = None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{key} must be an integer, got {raw!r}", automation_id=automation_id
        ) from None


def validate_definition(definition: AutomationDefinition) -> None:
    _validate_trigger_config(definition)
    for action in definition.actions.values():
        _validate_action_config(definition, action)
        if action.next_action_id is not None and action.next_action_id not in definition.actions:
            raise ConfigurationError(
                f"next_action_id {action.next_action_id!r} does not exist",
                automation_id=definition.id,
                action_id=action.id,
            )
        for branch_id in action.branch_ids():
            if branch_id not in definition.actions:
                raise ConfigurationError(
                    f"branch action {branch_id!r} does not exist",
                    automation_id=definition.id,
                    action_id=action.id,
                )
    _reject_cycles(definition)


def _validate_trigger_config(definition: AutomationDefinition) -> None:
    config = definition.trigger_config

    def fail(reason: str) -> ConfigurationError:
        return ConfigurationError(
            f"{definition.trigger_type.value} trigger: {reason}",
            automation_id=definition.id,
        )

    if not isinstance(config.get("keywords") or [], (list, tuple)):
        raise fail("keywords must be a list")
    conditions = config.get("conditions")
    if conditions is not None:
        if not isinstance(conditions, Mapping):
            raise fail("conditions must be an object")
        if not isinstance(conditions.get("tags") or [], (list, tuple)):
            raise fail("conditions.tags must be a list")
        if not isinstance(conditions.get("custom_fields") or {}, Mapping):
            raise fail("conditions.custom_fields must be an object")
    schedule = config.get("schedule")
    if definition.trigger_type is not TriggerType.SCHEDULE or schedule is None:
        return
    if not isinstance(schedule, Mapping):
        raise fail("schedule must be an object")
    kind = str(schedule.get("type") or "daily").lower()
    if kind not in SCHEDULE_KINDS:
        raise fail(f"unsupported schedule type {kind!r}")
    if kind == "once":
        try:
            datetime.fromisoformat(str(schedule.get("datetime") or ""))
        except ValueError:
            raise fail("schedule.datetime must be an ISO timestamp") from None
        return
    try:
        parse_hhmm(str(schedule.get("time") or ""))
    except ValueError as exc:
        raise fail(str(exc)) from None
    if kind == "weekly":
        days = schedule.get("days_of_week")
        if not isinstance(days, (list, tuple)) or not all(
            _is_int_between(day, 0, 6) for day in days
        ):
            raise fail("days_of_week must be a list of days 0-6 (0 = Sunday)")
    elif kind == "monthly":
        if not _is_int_between(schedule.get("day_of_month", 1), 1, 31):
            raise fail("day_of_month must be between 1 and 31")


def _is_int_between(value: Any, low: int, high: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and low <= value <= high


def _validate_action_config(
    definition: AutomationDefinition, action: AutomationAction
) -> None:
    config = action.config

    def fail(reason: str) -> ConfigurationError:
        return ConfigurationError(
            f"{action.type.value}: {reason}",
            automation_id=definition.id,
            action_id=action.id,
        )

    if action.type is ActionType.SEND_MESSAGE:
        message = config.get("message")
        if not isinstance(message, Mapping):
            raise fail("message config is required")
        template_id = message.get("template_id")
        if not message.get("content") and template_id is None:
            raise fail("message needs content or template_id")
        if template_id is not None:
            try:
                int(template_id)
            except (TypeError, ValueError):
                raise fail(f"template_id must be an integer, got {template_id!r}") from None
    elif action.type in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
        if not str(config.get("tag") or "").strip():
            raise fail("tag is required")
    elif action.type is ActionType.UPDATE_FIELD:
        field_config = config.get("field")
        if not isinstance(field_config, Mapping) or not str(
            field_config.get("name") or ""
        ).strip():
            raise fail("field.name is required")
    elif action.type is ActionType.DELAY:
        delay = config.get("delay")
        if not isinstance(delay, Mapping):
            raise fail("delay config is required")
        if delay.get("unit") not in DELAY_UNIT_SECONDS:
            raise fail(f"unsupported unit {delay.get('unit')!r}")
        duration = delay.get("duration")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            raise fail("duration must be a non-negative number")
    elif action.type is ActionType.CONDITION:
        condition = config.get("condition")
        if not isinstance(condition, Mapping):
            raise fail("condition config is required")
        if condition.get("operator") not in CONDITION_OPERATORS:
            raise fail(f"unsupported operator {condition.get('operator')!r}")
        if not str(condition.get("field") or "").strip():
            raise fail("condition.field is required")
        for branch in ("true_actions", "false_actions"):
            if not isinstance(condition.get(branch) or [], (list, tuple)):
                raise fail(f"condition.{branch} must be a list")
        if action.next_action_id is not None:
            raise fail("condition branches are terminal and cannot have next_action_id")
    elif action.type is ActionType.WEBHOOK:
        webhook = config.get("webhook")
        if not isinstance(webhook, Mapping) or not str(webhook.get("url") or "").strip():
            raise fail("webhook.url is required")
        method = str(webhook.get("method") or "POST").upper()
        if method not in WEBHOOK_METHODS:
            raise fail(f"unsupported method {method!r}")


def _reject_cycles(definition: AutomationDefinition) -> None:
    visiting: set[str] = set()
    done: set[str] = set()

    def successors(action_id: str) -> list[str]:
        action = definition.actions[action_id]
        edges = list(action.branch_ids())
        if action.next_action_id is not None:
            edges.append(action.next_action_id)
        return edges

    def visit(action_id: str) -> None:
        if action_id in done:
            return
        if action_id in visiting:
            raise ConfigurationError(
                f"action chain loops back to {action_id!r}",
                automation_id=definition.id,
                action_id=action_id,
            )
        visiting.add(action_id)
        for target in successors(action_id):
            visit(target)
        visiting.discard(action_id)
        done.add(action_id)

    for action_id in definition.actions:
        visit(action_id)


@dataclass
class Contact:
    id: int
    owner_id: int
    phone: str
    channel: str = "whatsapp"
    name: str | None = None
    email: str | None = None
    tags: list[str] = field(default_factory=list)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    last_interaction: datetime | None = None

    def field_value(self, name: str) -> Any:
        if name == "name":
            return self.name
        if name == "phone":
            return self.phone
        if name == "email":
            return self.email
        return self.custom_fields.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "phone": self.phone,
            "channel": self.channel,
            "name": self.name,
            "email": self.email,
            "tags": list(self.tags),
            "custom_fields": dict(self.custom_fields),
            "status": self.status,
            "last_interaction": (
                self.last_interaction.isoformat() if self.last_interaction else None
            ),
        }


@dataclass(frozen=True)
class InboundEvent:
    text: str = ""
    channel: str = "whatsapp"
    message_type: str = "text"
    button_payload: str | None = None
    received_at: datetime = field(default_factory=utc_now)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(
        cls,
        text: str,
        *,
        channel: str = "whatsapp",
        message_type: str = "text",
        button_payload: str | None = None,
        button_prefix: str = "BUTTON_PAYLOAD:",
    ) -> InboundEvent:
        content = text or ""
        if button_payload is None and content.startswith(button_prefix):
            button_payload = content[len(button_prefix):].strip()
        return cls(
            text=content,
            channel=channel,
            message_type=message_type,
            button_payload=button_payload,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> InboundEvent | None:
        if not payload:
            return None
        received_raw = payload.get("received_at")
        received_at = utc_now()
        if received_raw:
            try:
                received_at = datetime.fromisoformat(str(received_raw))
            except ValueError:
                pass
        return cls(
            text=str(payload.get("text") or ""),
            channel=str(payload.get("channel") or "whatsapp"),
            message_type=str(payload.get("message_type") or "text"),
            button_payload=payload.get("button_payload"),
            received_at=received_at,
            metadata=dict(payload.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "channel": self.channel,
            "message_type": self.message_type,
            "button_payload": self.button_payload,
            "received_at": self.received_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass
class ExecutionContext:
    automation: AutomationDefinition
    contact: Contact
    trigger_event: InboundEvent | None = None
    current_action_id: str | None = None
    trace_id: str = field(default_factory=new_trace_id)

    @property
    def automation_id(self) -> int:
        return self.automation.id

    @property
    def contact_id(self) -> int:
        return self.contact.id

    def log_extra(self, event: str, **fields: Any) -> dict[str, Any]:
        extra: dict[str, Any] = {
            "event": event,
            "trace_id": self.trace_id,
            "owner_id": self.automation.owner_id,
            "automation_id": self.automation.id,
            "contact_id": self.contact.id,
            "action_id": self.current_action_id,
        }
        extra.update(fields)
        return extra


@dataclass(frozen=True)
class ContinuationState:
    """Everything needed to resume a suspended walk from a queued job."""

    automation_id: int
    contact_id: int
    action_id: str
    trigger_event: Mapping[str, Any] | None = None
    trace_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "automation_id": self.automation_id,
            "contact_id": self.contact_id,
            "action_id": self.action_id,
        }
        if self.trigger_event is not None:
            payload["trigger_event"] = dict(self.trigger_event)
        if self.trace_id is not None:
            payload["trace_id"] = self.trace_id
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ContinuationState:
        try:
            return cls(
                automation_id=int(payload["automation_id"]),
                contact_id=int(payload["contact_id"]),
                action_id=str(payload["action_id"]),
                trigger_event=payload.get("trigger_event"),
                trace_id=payload.get("trace_id"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise QueueError(f"malformed continuation payload: {exc}") from exc


@dataclass
class QueueJob:
    owner_id: int
    job_type: JobType
    payload: dict[str, Any]
    priority: int = 0
    scheduled_at: datetime = field(default_factory=utc_now)
    attempts: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.PENDING
    error_message: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def log_extra(self, event: str, **fields: Any) -> dict[str, Any]:
        extra: dict[str, Any] = {
            "event": event,
            "job_id": self.id,
            "job_type": self.job_type.value,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        extra.update(fields)
        return extra


@dataclass(frozen=True)
class SendResult:
    success: bool
    external_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class WalkOutcome:
    state: WalkState
    automation_id: int
    contact_id: int
    action_id: str | None = None
    resume_at: datetime | None = None
    error: str | None = None
    trace_id: str = "-"
