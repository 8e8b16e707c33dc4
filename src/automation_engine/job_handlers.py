from __future__ import annotations

import logging

from src.automation_engine.base import AnalyticsSink, ChannelSender, ContactStore, MessageLog
from src.automation_engine.errors import ExecutionError
from src.automation_engine.executor import ActionExecutor
from src.automation_engine.models import ContinuationState, InboundEvent, QueueJob
from src.automation_engine.registry import AutomationRegistry


logger = logging.getLogger(__name__)


class SendMessageJobHandler:
    """Delivers a rendered outbound message and records the result."""

    def __init__(
        self,
        sender: ChannelSender,
        message_log: MessageLog,
        analytics: AnalyticsSink,
    ) -> None:
        self._sender = sender
        self._message_log = message_log
        self._analytics = analytics

    async def __call__(self, job: QueueJob) -> None:
        payload = job.payload
        channel = str(payload.get("channel") or "whatsapp")
        content = str(payload.get("content") or "")
        message_type = str(payload.get("message_type") or "text")
        media_url = payload.get("media_url")
        contact_id = payload.get("contact_id")
        automation_id = payload.get("automation_id")

        result = await self._sender.send(
            channel,
            str(payload.get("recipient") or ""),
            content,
            media_url=media_url,
            message_type=message_type,
        )
        self._message_log.record_message(
            owner_id=job.owner_id,
            contact_id=contact_id,
            direction="outbound",
            channel=channel,
            content=content,
            message_type=message_type,
            status="sent" if result.success else "failed",
            media_url=media_url,
            automation_id=automation_id,
            external_id=result.external_id,
        )
        self._analytics.record(
            job.owner_id,
            "message_sent" if result.success else "message_failed",
            {
                "channel": channel,
                "contact_id": contact_id,
                "automation_id": automation_id,
                "attempt": job.attempts + 1,
                "error": result.error,
            },
        )
        if not result.success:
            raise ExecutionError(result.error or "Failed to send message")


class AutomationActionJobHandler:
    """Resumes a suspended walk when its continuation job comes due."""

    def __init__(
        self,
        registry: AutomationRegistry,
        contact_store: ContactStore,
        executor: ActionExecutor,
    ) -> None:
        self._registry = registry
        self._contact_store = contact_store
        self._executor = executor

    async def __call__(self, job: QueueJob) -> None:
        state = ContinuationState.from_payload(job.payload)
        automation = self._registry.get(state.automation_id)
        if automation is None or not automation.is_active:
            logger.info(
                "continuation dropped: automation inactive or deleted",
                extra=job.log_extra(
                    "continuation_dropped", automation_id=state.automation_id
                ),
            )
            return
        contact = self._contact_store.get_contact(state.contact_id)
        if contact is None:
            logger.warning(
                "continuation dropped: contact not found",
                extra=job.log_extra(
                    "continuation_dropped",
                    automation_id=state.automation_id,
                    contact_id=state.contact_id,
                ),
            )
            return
        await self._executor.resume_walk(
            automation,
            contact,
            state.action_id,
            InboundEvent.from_dict(state.trigger_event),
            trace_id=state.trace_id,
        )
