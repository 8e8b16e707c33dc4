"""Pure predicates deciding whether an automation fires for an event."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Mapping

from src.automation_engine.models import (
    AutomationDefinition,
    Contact,
    InboundEvent,
    TriggerType,
)
from src.config import parse_hhmm


DEFAULT_SCHEDULE_TOLERANCE = timedelta(minutes=1)


def matches(
    automation: AutomationDefinition,
    contact: Contact,
    event: InboundEvent,
) -> bool:
    """Per-event check. Schedule and webhook triggers never match here."""
    config = automation.trigger_config
    if automation.trigger_type is TriggerType.KEYWORD:
        return keyword_matches(config, event.text)
    if automation.trigger_type is TriggerType.BUTTON_CLICK:
        return button_click_matches(config, event)
    if automation.trigger_type is TriggerType.FLOW_START:
        return conditions_match(config.get("conditions"), contact)
    return False


def keyword_matches(config: Mapping[str, Any], text: str | None) -> bool:
    content = (text or "").lower()
    for keyword in config.get("keywords") or []:
        needle = str(keyword).lower()
        if needle and needle in content:
            return True
    return False


def button_click_matches(config: Mapping[str, Any], event: InboundEvent) -> bool:
    if event.button_payload is None:
        return False
    expected = config.get("button_payload")
    if expected in (None, ""):
        return True
    return str(expected).strip() == event.button_payload.strip()


def conditions_match(conditions: Mapping[str, Any] | None, contact: Contact) -> bool:
    if not conditions:
        return True
    required_tags = conditions.get("tags") or []
    if not set(required_tags).issubset(contact.tags):
        return False
    for name, expected in (conditions.get("custom_fields") or {}).items():
        if name not in contact.custom_fields or contact.custom_fields[name] != expected:
            return False
    return True


def schedule_slot(schedule: Mapping[str, Any], now_local: datetime) -> datetime | None:
    """Return today's firing instant for ``schedule``, or None if not today.

    ``days_of_week`` uses 0 = Sunday through 6 = Saturday.
    """
    kind = str(schedule.get("type") or "daily").lower()
    if kind == "once":
        raw = schedule.get("datetime")
        if not raw:
            return None
        moment = datetime.fromisoformat(str(raw))
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=now_local.tzinfo)
        moment = moment.astimezone(now_local.tzinfo)
        return moment if moment.date() == now_local.date() else None

    hour, minute = parse_hhmm(str(schedule.get("time") or ""))
    if kind == "weekly":
        days = {int(day) for day in schedule.get("days_of_week") or []}
        if (now_local.weekday() + 1) % 7 not in days:
            return None
    elif kind == "monthly":
        if now_local.day != int(schedule.get("day_of_month") or 1):
            return None
    elif kind != "daily":
        return None
    return now_local.replace(hour=hour, minute=minute, second=0, microsecond=0)


def schedule_due(
    config: Mapping[str, Any],
    now_local: datetime,
    *,
    tolerance: timedelta = DEFAULT_SCHEDULE_TOLERANCE,
    last_fired_on: date | None = None,
) -> bool:
    schedule = config.get("schedule")
    if not isinstance(schedule, Mapping):
        return False
    if last_fired_on == now_local.date():
        return False
    try:
        slot = schedule_slot(schedule, now_local)
    except (TypeError, ValueError):
        return False
    if slot is None:
        return False
    elapsed = now_local - slot
    return timedelta(0) <= elapsed < tolerance
