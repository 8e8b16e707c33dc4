from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.automation_engine.base import ContactStore
from src.automation_engine.executor import ActionExecutor
from src.automation_engine.models import (
    AutomationDefinition,
    InboundEvent,
    TriggerType,
    WalkOutcome,
)
from src.automation_engine.registry import AutomationRegistry
from src.automation_engine.triggers import conditions_match, schedule_due


logger = logging.getLogger(__name__)


class ScheduleTriggerService:
    """Periodic scan that fires ``schedule`` automations.

    Each automation fires at most once per local day, for every contact of
    its owner that satisfies the optional ``conditions`` block.
    """

    def __init__(
        self,
        registry: AutomationRegistry,
        contact_store: ContactStore,
        executor: ActionExecutor,
        *,
        timezone_name: str = "America/Sao_Paulo",
        poll_interval_seconds: int = 30,
        tolerance_seconds: int = 60,
    ) -> None:
        self._registry = registry
        self._contact_store = contact_store
        self._executor = executor
        self._tzinfo = _resolve_timezone(timezone_name)
        self._poll_interval_seconds = poll_interval_seconds
        self._tolerance = timedelta(seconds=tolerance_seconds)
        self._last_fired: dict[int, date] = {}
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="schedule_trigger_loop")
        logger.info("schedule service started", extra={"event": "schedule_started"})

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("schedule service stopped", extra={"event": "schedule_stopped"})

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_due(datetime.now(self._tzinfo))
            except Exception:
                logger.exception("schedule scan failed", extra={"event": "schedule_error"})
            await asyncio.sleep(self._poll_interval_seconds)

    async def run_due(self, now_local: datetime) -> list[WalkOutcome]:
        now_local = now_local.astimezone(self._tzinfo)
        outcomes: list[WalkOutcome] = []
        for automation in self._registry.get_by_trigger(TriggerType.SCHEDULE):
            try:
                outcomes.extend(await self._fire_if_due(automation, now_local))
            except Exception:
                # A failing automation stays skipped until the next local day.
                self._last_fired[automation.id] = now_local.date()
                logger.exception(
                    "schedule automation failed",
                    extra={
                        "event": "schedule_error",
                        "automation_id": automation.id,
                        "owner_id": automation.owner_id,
                    },
                )
        return outcomes

    async def _fire_if_due(
        self, automation: AutomationDefinition, now_local: datetime
    ) -> list[WalkOutcome]:
        if not schedule_due(
            automation.trigger_config,
            now_local,
            tolerance=self._tolerance,
            last_fired_on=self._last_fired.get(automation.id),
        ):
            return []
        self._last_fired[automation.id] = now_local.date()
        conditions = automation.trigger_config.get("conditions")
        contacts = [
            contact
            for contact in self._contact_store.list_contacts(automation.owner_id)
            if contact.status == "active" and conditions_match(conditions, contact)
        ]
        logger.info(
            "schedule trigger fired",
            extra={
                "event": "schedule_fired",
                "automation_id": automation.id,
                "owner_id": automation.owner_id,
                "status": f"{len(contacts)} contacts",
            },
        )
        outcomes: list[WalkOutcome] = []
        for contact in contacts:
            event = InboundEvent(
                channel=contact.channel,
                message_type="schedule",
                received_at=now_local.astimezone(timezone.utc),
                metadata={"trigger": "schedule"},
            )
            outcomes.append(await self._executor.execute(automation, contact, event))
        return outcomes


def _resolve_timezone(timezone_name: str):
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError:
        if timezone_name == "America/Sao_Paulo":
            return timezone(timedelta(hours=-3))
        return timezone.utc
