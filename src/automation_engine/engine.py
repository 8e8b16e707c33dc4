from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable, Mapping

from src.automation_engine.base import (
    AnalyticsSink,
    AutomationStore,
    ChannelSender,
    ContactStore,
    JobStore,
    MessageLog,
    TemplateRenderer,
)
from src.automation_engine.events import JOB_FAILED, EventEmitter
from src.automation_engine.executor import ActionExecutor
from src.automation_engine.job_handlers import (
    AutomationActionJobHandler,
    SendMessageJobHandler,
)
from src.automation_engine.models import (
    AutomationDefinition,
    Contact,
    InboundEvent,
    JobType,
    TriggerType,
    WalkOutcome,
    new_trace_id,
    utc_now,
)
from src.automation_engine.providers.webhook_client import WebhookClient
from src.automation_engine.queue_manager import QueueManager
from src.automation_engine.registry import AutomationRegistry
from src.automation_engine.scheduler import ScheduleTriggerService
from src.automation_engine import triggers
from src.config import Settings
from src.automation_engine.seed import import_automations_file


logger = logging.getLogger(__name__)


class AutomationEngine:
    """Owns the registry, queue, executor and scheduler for one process.

    Build it once at startup with :meth:`build`, call :meth:`start`, and
    :meth:`stop` it at shutdown.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        registry: AutomationRegistry,
        queue: QueueManager,
        executor: ActionExecutor,
        scheduler: ScheduleTriggerService,
        contact_store: ContactStore,
        automation_store: AutomationStore,
        analytics: AnalyticsSink,
        message_log: MessageLog,
        events: EventEmitter,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.queue = queue
        self.executor = executor
        self.scheduler = scheduler
        self.events = events
        self._contact_store = contact_store
        self._automation_store = automation_store
        self._analytics = analytics
        self._message_log = message_log
        self._clock = clock
        self._started = False

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        contact_store: ContactStore,
        automation_store: AutomationStore,
        analytics: AnalyticsSink,
        message_log: MessageLog,
        channel_sender: ChannelSender,
        renderer: TemplateRenderer,
        job_store: JobStore | None = None,
        webhook_client: WebhookClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> AutomationEngine:
        events = EventEmitter()
        registry = AutomationRegistry()
        queue = QueueManager.from_settings(
            settings, job_store=job_store, events=events, clock=clock
        )
        executor = ActionExecutor(
            contact_store=contact_store,
            renderer=renderer,
            queue=queue,
            analytics=analytics,
            webhook_client=webhook_client
            or WebhookClient(timeout_seconds=settings.webhook_timeout_seconds),
            events=events,
            human_handoff_tag=settings.human_handoff_tag,
            clock=clock,
        )
        queue.register_handler(
            JobType.SEND_MESSAGE,
            SendMessageJobHandler(channel_sender, message_log, analytics),
        )
        queue.register_handler(
            JobType.AUTOMATION_ACTION,
            AutomationActionJobHandler(registry, contact_store, executor),
        )
        scheduler = ScheduleTriggerService(
            registry,
            contact_store,
            executor,
            timezone_name=settings.bot_timezone,
            poll_interval_seconds=settings.schedule_poll_interval_seconds,
            tolerance_seconds=settings.schedule_tolerance_seconds,
        )
        engine = cls(
            settings=settings,
            registry=registry,
            queue=queue,
            executor=executor,
            scheduler=scheduler,
            contact_store=contact_store,
            automation_store=automation_store,
            analytics=analytics,
            message_log=message_log,
            events=events,
            clock=clock,
        )
        events.subscribe(JOB_FAILED, engine._on_job_failed)
        return engine

    async def start(self) -> None:
        if self._started:
            return
        if self.settings.automations_file:
            import_automations_file(
                self.settings.automations_file,
                self._automation_store,
                default_owner_id=self.settings.default_owner_id,
            )
        self.load_automations()
        await self.queue.restore()
        await self.queue.start()
        if self.settings.scheduler_enabled:
            await self.scheduler.start()
        self._started = True
        logger.info("automation engine started", extra={"event": "engine_started"})

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.queue.stop()
        self._started = False
        logger.info("automation engine stopped", extra={"event": "engine_stopped"})

    def load_automations(self) -> int:
        records: list[dict] = []
        for trigger_type in TriggerType:
            records.extend(
                self._automation_store.find_active_by_trigger_type(trigger_type.value)
            )
        return self.registry.load(records)

    async def handle_incoming_message(
        self,
        owner_id: int,
        identifier: str,
        text: str,
        *,
        channel: str = "whatsapp",
        message_type: str = "text",
        name: str | None = None,
        button_payload: str | None = None,
        media_url: str | None = None,
    ) -> list[WalkOutcome]:
        contact = self._contact_store.find_or_create(
            owner_id, identifier, channel, name=name
        )
        self._message_log.record_message(
            owner_id=owner_id,
            contact_id=contact.id,
            direction="inbound",
            channel=channel,
            content=text or "",
            message_type=message_type,
            status="delivered",
            media_url=media_url,
        )
        contact = self._contact_store.update_contact(
            contact.id, {"last_interaction": self._clock()}
        )
        event = InboundEvent.from_message(
            text,
            channel=channel,
            message_type=message_type,
            button_payload=button_payload,
            button_prefix=self.settings.button_payload_prefix,
        )
        outcomes = await self.process_incoming_event(owner_id, contact, event)
        self._record(
            owner_id,
            "message_received",
            {"channel": channel, "contact_id": contact.id, "message_type": message_type},
        )
        return outcomes

    async def process_incoming_event(
        self, owner_id: int, contact: Contact, event: InboundEvent
    ) -> list[WalkOutcome]:
        matched: list[AutomationDefinition] = []
        for automation in self.registry.for_owner(owner_id):
            try:
                if triggers.matches(automation, contact, event):
                    matched.append(automation)
            except Exception:
                logger.exception(
                    "trigger evaluation failed",
                    extra={
                        "event": "trigger_error",
                        "automation_id": automation.id,
                        "contact_id": contact.id,
                    },
                )
        outcomes: list[WalkOutcome] = []
        for automation in matched:
            current = self._contact_store.get_contact(contact.id) or contact
            self._record(
                owner_id,
                "automation_triggered",
                {
                    "automation_id": automation.id,
                    "trigger_type": automation.trigger_type.value,
                    "contact_id": contact.id,
                },
            )
            outcomes.append(await self.execute_automation(automation, current, event))
        return outcomes

    async def execute_automation(
        self,
        automation: AutomationDefinition,
        contact: Contact,
        trigger_event: InboundEvent | None = None,
    ) -> WalkOutcome:
        trace_id = new_trace_id()
        logger.info(
            "executing automation %s",
            automation.name,
            extra={
                "event": "automation_start",
                "trace_id": trace_id,
                "owner_id": automation.owner_id,
                "automation_id": automation.id,
                "contact_id": contact.id,
                "channel": contact.channel,
            },
        )
        return await self.executor.execute(
            automation, contact, trigger_event, trace_id=trace_id
        )

    async def process_webhook_event(
        self,
        automation_id: int,
        contact: Contact,
        payload: Mapping[str, Any] | None = None,
    ) -> WalkOutcome | None:
        automation = self.registry.get(automation_id)
        if automation is None or automation.trigger_type is not TriggerType.WEBHOOK:
            logger.info(
                "webhook event ignored: no active webhook automation",
                extra={
                    "event": "webhook_trigger_ignored",
                    "automation_id": automation_id,
                    "contact_id": contact.id,
                },
            )
            return None
        event = InboundEvent(
            channel=contact.channel,
            message_type="webhook",
            metadata=dict(payload or {}),
        )
        return await self.execute_automation(automation, contact, event)

    def create_automation(self, record: Mapping[str, Any]) -> AutomationDefinition | None:
        stored = self._automation_store.create_automation(record)
        return self.registry.upsert(stored)

    def update_automation(
        self, automation_id: int, changes: Mapping[str, Any]
    ) -> AutomationDefinition | None:
        stored = self._automation_store.update_automation(automation_id, changes)
        if stored is None:
            raise KeyError(automation_id)
        return self.registry.upsert(stored)

    def toggle_automation(
        self, automation_id: int, active: bool | None = None
    ) -> AutomationDefinition | None:
        if active is None:
            current = self._automation_store.get_automation(automation_id)
            if current is None:
                raise KeyError(automation_id)
            active = not bool(current.get("is_active"))
        stored = self._automation_store.set_automation_active(automation_id, active)
        if stored is None:
            raise KeyError(automation_id)
        return self.registry.upsert(stored)

    def delete_automation(self, automation_id: int) -> bool:
        deleted = self._automation_store.delete_automation(automation_id)
        self.registry.remove(automation_id)
        return deleted

    async def _on_job_failed(self, payload: dict[str, Any]) -> None:
        job = payload["job"]
        self._record(
            job.owner_id,
            "job_failed",
            {
                "job_id": job.id,
                "job_type": job.job_type.value,
                "attempts": job.attempts,
                "error": job.error_message,
                "automation_id": job.payload.get("automation_id"),
            },
        )

    def _record(self, owner_id: int, event_name: str, metadata: dict[str, Any]) -> None:
        try:
            self._analytics.record(owner_id, event_name, metadata)
        except Exception:
            logger.warning(
                "failed to record analytics event",
                extra={"event": "analytics_error", "status": event_name},
                exc_info=True,
            )
