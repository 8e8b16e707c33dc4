from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
import math
from typing import Any, Awaitable, Callable, Mapping
import weakref

from src.automation_engine.base import AnalyticsSink, ContactStore, TemplateRenderer
from src.automation_engine.errors import AutomationError, ConfigurationError, ExecutionError
from src.automation_engine.events import HUMAN_TRANSFER_REQUESTED, EventEmitter
from src.automation_engine.models import (
    DELAY_UNIT_SECONDS,
    ActionType,
    AutomationAction,
    AutomationDefinition,
    Contact,
    ContinuationState,
    ExecutionContext,
    InboundEvent,
    JobType,
    QueueJob,
    WalkOutcome,
    WalkState,
    new_trace_id,
    utc_now,
)
from src.automation_engine.providers.webhook_client import WebhookClient
from src.automation_engine.queue_manager import QueueManager
from src.redaction import redact_headers


logger = logging.getLogger(__name__)

# None means "continue with next_action_id"; an outcome ends the segment.
StepResult = WalkOutcome | None


class ActionExecutor:
    """Walks an automation's action chain for one contact.

    A walk segment runs actions in order until the chain ends (DONE), a
    delay suspends it into a continuation job (SUSPENDED), or an action
    fails (ABORTED). Walks for the same contact are serialized.
    """

    def __init__(
        self,
        *,
        contact_store: ContactStore,
        renderer: TemplateRenderer,
        queue: QueueManager,
        analytics: AnalyticsSink,
        webhook_client: WebhookClient | None = None,
        events: EventEmitter | None = None,
        human_handoff_tag: str = "needs_human",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._contact_store = contact_store
        self._renderer = renderer
        self._queue = queue
        self._analytics = analytics
        self._webhook_client = webhook_client or WebhookClient()
        self._events = events or EventEmitter()
        self._human_handoff_tag = human_handoff_tag
        self._clock = clock
        self._contact_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._steps: dict[
            ActionType,
            Callable[[ExecutionContext, AutomationAction], Awaitable[StepResult]],
        ] = {
            ActionType.SEND_MESSAGE: self._send_message,
            ActionType.ADD_TAG: self._add_tag,
            ActionType.REMOVE_TAG: self._remove_tag,
            ActionType.UPDATE_FIELD: self._update_field,
            ActionType.DELAY: self._delay,
            ActionType.CONDITION: self._condition,
            ActionType.WEBHOOK: self._webhook,
            ActionType.TRANSFER_HUMAN: self._transfer_human,
        }

    async def execute(
        self,
        automation: AutomationDefinition,
        contact: Contact,
        trigger_event: InboundEvent | None = None,
        *,
        trace_id: str | None = None,
    ) -> WalkOutcome:
        context = ExecutionContext(
            automation=automation,
            contact=contact,
            trigger_event=trigger_event,
            trace_id=trace_id or new_trace_id(),
        )
        entry = automation.entry_action_id
        if entry is None:
            return self._outcome(context, WalkState.DONE)
        return await self._walk(context, entry)

    async def resume_walk(
        self,
        automation: AutomationDefinition,
        contact: Contact,
        action_id: str,
        trigger_event: InboundEvent | None = None,
        *,
        trace_id: str | None = None,
    ) -> WalkOutcome:
        context = ExecutionContext(
            automation=automation,
            contact=contact,
            trigger_event=trigger_event,
            trace_id=trace_id or new_trace_id(),
        )
        logger.info(
            "resuming walk",
            extra=context.log_extra("walk_resumed", action_id=action_id),
        )
        return await self._walk(context, action_id)

    async def enqueue_continuation(
        self, context: ExecutionContext, action_id: str, resume_at: datetime
    ) -> QueueJob:
        state = ContinuationState(
            automation_id=context.automation_id,
            contact_id=context.contact_id,
            action_id=action_id,
            trigger_event=(
                context.trigger_event.to_dict() if context.trigger_event else None
            ),
            trace_id=context.trace_id,
        )
        return await self._queue.enqueue(
            context.automation.owner_id,
            JobType.AUTOMATION_ACTION,
            state.to_payload(),
            scheduled_at=resume_at,
        )

    async def _walk(self, context: ExecutionContext, start_action_id: str) -> WalkOutcome:
        lock = self._contact_lock(context.contact_id)
        async with lock:
            try:
                outcome = await self._run_chain(context, start_action_id)
            except ConfigurationError as exc:
                logger.warning(
                    "walk halted by configuration error: %s",
                    exc,
                    extra=context.log_extra("walk_misconfigured", status="error"),
                )
                return self._outcome(context, WalkState.ABORTED, error=str(exc))
            except Exception as exc:
                error = exc if isinstance(exc, AutomationError) else ExecutionError(str(exc))
                logger.exception(
                    "walk aborted",
                    extra=context.log_extra("walk_aborted", status="error"),
                )
                self._record(
                    context,
                    "automation_failed",
                    {
                        "action_id": context.current_action_id,
                        "error": str(error) or error.__class__.__name__,
                    },
                )
                return self._outcome(context, WalkState.ABORTED, error=str(error))
        if outcome.state is WalkState.DONE:
            self._record(context, "automation_executed", {})
        logger.info(
            "walk segment finished",
            extra=context.log_extra("walk_finished", status=outcome.state.value),
        )
        return outcome

    async def _run_chain(self, context: ExecutionContext, action_id: str) -> WalkOutcome:
        current: str | None = action_id
        while current is not None:
            context.current_action_id = current
            action = context.automation.action(current)
            step = self._steps.get(action.type)
            if step is None:
                raise ConfigurationError(
                    f"unknown action type {action.type!r}",
                    automation_id=context.automation_id,
                    action_id=action.id,
                )
            logger.debug(
                "executing action",
                extra=context.log_extra("action_start", action_type=action.type.value),
            )
            try:
                result = await step(context, action)
            except AutomationError:
                raise
            except Exception as exc:
                raise ExecutionError(
                    f"{action.type.value} action {action.id!r} failed: {exc}"
                ) from exc
            if result is not None:
                return result
            current = action.next_action_id
        return self._outcome(context, WalkState.DONE)

    async def _send_message(
        self, context: ExecutionContext, action: AutomationAction
    ) -> StepResult:
        message = action.config["message"]
        template_id = message.get("template_id")
        template: str | int = (
            int(template_id) if template_id is not None else str(message.get("content") or "")
        )
        content = self._renderer.render(
            template, context.contact, message.get("variables") or {}
        )
        contact = context.contact
        await self._queue.enqueue(
            context.automation.owner_id,
            JobType.SEND_MESSAGE,
            {
                "contact_id": contact.id,
                "recipient": contact.phone,
                "channel": message.get("channel") or contact.channel,
                "message_type": message.get("type") or "text",
                "content": content,
                "media_url": message.get("media_url"),
                "automation_id": context.automation_id,
                "trace_id": context.trace_id,
            },
        )
        return None

    async def _add_tag(self, context: ExecutionContext, action: AutomationAction) -> StepResult:
        tag = str(action.config["tag"]).strip()
        if tag not in context.contact.tags:
            context.contact = self._contact_store.add_tag(context.contact_id, tag)
        return None

    async def _remove_tag(
        self, context: ExecutionContext, action: AutomationAction
    ) -> StepResult:
        tag = str(action.config["tag"]).strip()
        if tag in context.contact.tags:
            context.contact = self._contact_store.remove_tag(context.contact_id, tag)
        return None

    async def _update_field(
        self, context: ExecutionContext, action: AutomationAction
    ) -> StepResult:
        field_config = action.config["field"]
        context.contact = self._contact_store.set_custom_field(
            context.contact_id,
            str(field_config["name"]).strip(),
            field_config.get("value"),
        )
        return None

    async def _delay(self, context: ExecutionContext, action: AutomationAction) -> StepResult:
        if action.next_action_id is None:
            return None
        delay = action.config["delay"]
        seconds = float(delay["duration"]) * DELAY_UNIT_SECONDS[delay["unit"]]
        resume_at = self._clock() + timedelta(seconds=seconds)
        job = await self.enqueue_continuation(context, action.next_action_id, resume_at)
        logger.info(
            "walk suspended until %s",
            resume_at.isoformat(),
            extra=context.log_extra("walk_suspended", job_id=job.id),
        )
        return self._outcome(
            context,
            WalkState.SUSPENDED,
            action_id=action.next_action_id,
            resume_at=resume_at,
        )

    async def _condition(
        self, context: ExecutionContext, action: AutomationAction
    ) -> StepResult:
        condition = action.config["condition"]
        field_name = str(condition["field"]).strip()
        matched = evaluate_condition(
            context.contact.field_value(field_name),
            str(condition["operator"]),
            condition.get("value"),
        )
        branch = condition.get("true_actions") if matched else condition.get("false_actions")
        logger.debug(
            "condition evaluated",
            extra=context.log_extra("condition_evaluated", status=str(matched).lower()),
        )
        suspended: WalkOutcome | None = None
        for branch_action_id in branch or []:
            result = await self._run_chain(context, str(branch_action_id))
            if result.state is WalkState.SUSPENDED and suspended is None:
                suspended = result
        if suspended is not None:
            return suspended
        return self._outcome(context, WalkState.DONE)

    async def _webhook(self, context: ExecutionContext, action: AutomationAction) -> StepResult:
        webhook = action.config["webhook"]
        url = str(webhook["url"]).strip()
        method = str(webhook.get("method") or "POST").upper()
        headers = dict(webhook.get("headers") or {})
        body = webhook.get("body")
        if body is None:
            body = {
                "contact": context.contact.to_dict(),
                "automation": context.automation.summary(),
                "trigger_event": (
                    context.trigger_event.to_dict() if context.trigger_event else None
                ),
                "timestamp": self._clock().isoformat(),
            }
        try:
            status_code = await self._webhook_client.call(
                url, method=method, headers=headers, body=body
            )
        except Exception:
            logger.warning(
                "webhook action failed (%s %s, headers=%s)",
                method,
                url,
                redact_headers(headers),
                extra=context.log_extra("webhook_error", status="error"),
                exc_info=True,
            )
            return None
        logger.info(
            "webhook action delivered",
            extra=context.log_extra("webhook_ok", status=str(status_code)),
        )
        return None

    async def _transfer_human(
        self, context: ExecutionContext, action: AutomationAction
    ) -> StepResult:
        if self._human_handoff_tag not in context.contact.tags:
            context.contact = self._contact_store.add_tag(
                context.contact_id, self._human_handoff_tag
            )
        payload = {
            "owner_id": context.automation.owner_id,
            "automation_id": context.automation_id,
            "contact_id": context.contact_id,
            "phone": context.contact.phone,
            "channel": context.contact.channel,
            "name": context.contact.name,
            "reason": action.config.get("reason") or "Automation transfer",
        }
        self._record(context, "human_transfer_requested", {"reason": payload["reason"]})
        await self._events.emit(HUMAN_TRANSFER_REQUESTED, payload)
        return None

    def _contact_lock(self, contact_id: int) -> asyncio.Lock:
        lock = self._contact_locks.get(contact_id)
        if lock is None:
            lock = asyncio.Lock()
            self._contact_locks[contact_id] = lock
        return lock

    def _record(
        self, context: ExecutionContext, event_name: str, metadata: Mapping[str, Any]
    ) -> None:
        payload = {
            "automation_id": context.automation_id,
            "automation_name": context.automation.name,
            "contact_id": context.contact_id,
            "trace_id": context.trace_id,
        }
        payload.update(metadata)
        try:
            self._analytics.record(context.automation.owner_id, event_name, payload)
        except Exception:
            logger.warning(
                "failed to record analytics event",
                extra=context.log_extra("analytics_error", status=event_name),
                exc_info=True,
            )

    @staticmethod
    def _outcome(
        context: ExecutionContext,
        state: WalkState,
        *,
        action_id: str | None = None,
        resume_at: datetime | None = None,
        error: str | None = None,
    ) -> WalkOutcome:
        return WalkOutcome(
            state=state,
            automation_id=context.automation_id,
            contact_id=context.contact_id,
            action_id=action_id if action_id is not None else context.current_action_id,
            resume_at=resume_at,
            error=error,
            trace_id=context.trace_id,
        )


def evaluate_condition(value: Any, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return value == expected
    if operator == "contains":
        haystack = "" if value is None else str(value)
        needle = "" if expected is None else str(expected)
        return needle.lower() in haystack.lower()
    if operator == "greater_than":
        return _to_number(value) > _to_number(expected)
    if operator == "less_than":
        return _to_number(value) < _to_number(expected)
    return False


def _to_number(value: Any) -> float:
    if isinstance(value, (bool, int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return 0.0
    return 0.0 if math.isnan(number) else number
