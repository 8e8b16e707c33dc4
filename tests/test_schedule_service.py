from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.automation_engine.executor import ActionExecutor
from src.automation_engine.models import WalkState
from src.automation_engine.queue_manager import QueueManager
from src.automation_engine.registry import AutomationRegistry
from src.automation_engine.scheduler import ScheduleTriggerService
from src.automation_engine.templates import InlineTemplateRenderer
from src.state_store import StateStore


def build_service(tmp_path: Path, schedule: dict, conditions: dict | None = None):
    store = StateStore(str(tmp_path / "state.db"))
    executor = ActionExecutor(
        contact_store=store,
        renderer=InlineTemplateRenderer(),
        queue=QueueManager(),
        analytics=store,
    )
    trigger_config: dict = {"schedule": schedule}
    if conditions is not None:
        trigger_config["conditions"] = conditions
    registry = AutomationRegistry()
    registry.load(
        [
            {
                "id": 1,
                "owner_id": 1,
                "name": "lembrete",
                "trigger_type": "schedule",
                "trigger_config": trigger_config,
                "actions": [{"id": "1", "type": "add_tag", "config": {"tag": "lembrado"}}],
            }
        ]
    )
    service = ScheduleTriggerService(
        registry,
        store,
        executor,
        timezone_name="UTC",
        tolerance_seconds=60,
    )
    return store, service


@pytest.mark.asyncio
async def test_daily_schedule_fires_once_per_day(tmp_path: Path) -> None:
    store, service = build_service(tmp_path, {"type": "daily", "time": "09:00"})
    first = store.find_or_create(1, "5511999990001", "whatsapp")
    second = store.find_or_create(1, "5511999990002", "whatsapp")
    slot = datetime(2024, 3, 4, 9, 0, 20, tzinfo=timezone.utc)

    outcomes = await service.run_due(slot)
    repeated = await service.run_due(slot + timedelta(seconds=20))

    assert [o.state for o in outcomes] == [WalkState.DONE, WalkState.DONE]
    assert repeated == []
    assert store.get_contact(first.id).tags == ["lembrado"]
    assert store.get_contact(second.id).tags == ["lembrado"]

    next_day = await service.run_due(slot + timedelta(days=1))
    assert len(next_day) == 2


@pytest.mark.asyncio
async def test_schedule_outside_window_does_not_fire(tmp_path: Path) -> None:
    store, service = build_service(tmp_path, {"type": "daily", "time": "09:00"})
    store.find_or_create(1, "5511999990001", "whatsapp")

    assert await service.run_due(datetime(2024, 3, 4, 8, 59, tzinfo=timezone.utc)) == []
    assert await service.run_due(datetime(2024, 3, 4, 9, 5, tzinfo=timezone.utc)) == []


@pytest.mark.asyncio
async def test_schedule_targets_contacts_matching_conditions(tmp_path: Path) -> None:
    store, service = build_service(
        tmp_path,
        {"type": "weekly", "time": "10:00", "days_of_week": [1]},
        conditions={"tags": ["novo_contato"]},
    )
    tagged = store.find_or_create(1, "5511999990001", "whatsapp")
    store.add_tag(tagged.id, "novo_contato")
    untagged = store.find_or_create(1, "5511999990002", "whatsapp")
    inactive = store.find_or_create(1, "5511999990003", "whatsapp")
    store.add_tag(inactive.id, "novo_contato")
    store.update_contact(inactive.id, {"status": "blocked"})

    monday = datetime(2024, 3, 4, 10, 0, 10, tzinfo=timezone.utc)
    outcomes = await service.run_due(monday)

    assert [o.contact_id for o in outcomes] == [tagged.id]
    assert "lembrado" not in store.get_contact(untagged.id).tags
    assert "lembrado" not in store.get_contact(inactive.id).tags


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(tmp_path: Path) -> None:
    _, service = build_service(tmp_path, {"type": "daily", "time": "09:00"})

    await service.start()
    await service.start()
    await service.stop()
    await service.stop()


class FailingForOwnerStore:
    def __init__(self, store: StateStore, failing_owner_id: int) -> None:
        self._store = store
        self._failing_owner_id = failing_owner_id
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self._store, name)

    def list_contacts(self, owner_id: int):
        if owner_id == self._failing_owner_id:
            self.calls += 1
            raise RuntimeError("database is locked")
        return self._store.list_contacts(owner_id)


@pytest.mark.asyncio
async def test_failing_schedule_automation_does_not_block_others(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "state.db"))
    contact = store.find_or_create(1, "5511999990001", "whatsapp")
    contacts = FailingForOwnerStore(store, failing_owner_id=2)
    executor = ActionExecutor(
        contact_store=contacts,
        renderer=InlineTemplateRenderer(),
        queue=QueueManager(),
        analytics=store,
    )
    registry = AutomationRegistry()
    schedule = {"schedule": {"type": "daily", "time": "09:00"}}
    action = [{"id": "1", "type": "add_tag", "config": {"tag": "lembrado"}}]
    registry.load(
        [
            {
                "id": 1,
                "owner_id": 2,
                "name": "quebrada",
                "trigger_type": "schedule",
                "trigger_config": schedule,
                "actions": action,
            },
            {
                "id": 2,
                "owner_id": 1,
                "name": "ok",
                "trigger_type": "schedule",
                "trigger_config": schedule,
                "actions": action,
            },
        ]
    )
    service = ScheduleTriggerService(registry, contacts, executor, timezone_name="UTC")
    slot = datetime(2024, 3, 4, 9, 0, 10, tzinfo=timezone.utc)

    outcomes = await service.run_due(slot)
    await service.run_due(slot + timedelta(seconds=20))

    assert [o.automation_id for o in outcomes] == [2]
    assert store.get_contact(contact.id).tags == ["lembrado"]
    assert contacts.calls == 1


@pytest.mark.asyncio
async def test_malformed_schedule_is_quarantined_and_valid_one_fires(tmp_path: Path) -> None:
    store, service = build_service(tmp_path, {"type": "daily", "time": "09:00"})
    contact = store.find_or_create(1, "5511999990001", "whatsapp")
    registry = service._registry
    registry.upsert(
        {
            "id": 9,
            "owner_id": 1,
            "name": "semana quebrada",
            "trigger_type": "schedule",
            "trigger_config": {"schedule": {"type": "weekly", "time": "09:00", "days_of_week": 1}},
            "actions": [{"id": "1", "type": "add_tag", "config": {"tag": "nunca"}}],
        }
    )

    outcomes = await service.run_due(datetime(2024, 3, 4, 9, 0, 10, tzinfo=timezone.utc))

    assert 9 in registry.quarantined
    assert [o.automation_id for o in outcomes] == [1]
    assert store.get_contact(contact.id).tags == ["lembrado"]
