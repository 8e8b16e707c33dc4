from __future__ import annotations

from pathlib import Path

import pytest

from src.automation_engine.errors import ExecutionError, QueueError
from src.automation_engine.executor import ActionExecutor
from src.automation_engine.job_handlers import (
    AutomationActionJobHandler,
    SendMessageJobHandler,
)
from src.automation_engine.models import JobType, SendResult
from src.automation_engine.queue_manager import QueueManager
from src.automation_engine.registry import AutomationRegistry
from src.automation_engine.templates import InlineTemplateRenderer
from src.state_store import StateStore


class FakeSender:
    def __init__(self, result: SendResult) -> None:
        self.result = result
        self.sent: list[dict] = []

    async def send(self, channel, recipient, content, media_url=None, message_type="text"):
        self.sent.append(
            {
                "channel": channel,
                "recipient": recipient,
                "content": content,
                "media_url": media_url,
                "message_type": message_type,
            }
        )
        return self.result


def build_send_job(queue: QueueManager, contact_id: int):
    return queue.create_job(
        1,
        JobType.SEND_MESSAGE,
        {
            "contact_id": contact_id,
            "recipient": "5511999999999",
            "channel": "whatsapp",
            "message_type": "text",
            "content": "Olá!",
            "automation_id": 4,
        },
    )


@pytest.mark.asyncio
async def test_send_message_handler_records_delivery(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "state.db"))
    contact = store.find_or_create(1, "5511999999999", "whatsapp")
    sender = FakeSender(SendResult(success=True, external_id="wamid.1"))
    handler = SendMessageJobHandler(sender, store, store)

    await handler(build_send_job(QueueManager(), contact.id))

    assert sender.sent[0]["recipient"] == "5511999999999"
    assert sender.sent[0]["content"] == "Olá!"
    messages = store.list_messages(contact.id)
    assert len(messages) == 1
    assert messages[0]["direction"] == "outbound"
    assert messages[0]["status"] == "sent"
    assert messages[0]["external_id"] == "wamid.1"
    assert store.list_analytics_events(event_name="message_sent")


@pytest.mark.asyncio
async def test_send_message_handler_raises_on_failed_delivery(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "state.db"))
    contact = store.find_or_create(1, "5511999999999", "whatsapp")
    handler = SendMessageJobHandler(
        FakeSender(SendResult(success=False, error="rate limited")), store, store
    )

    with pytest.raises(ExecutionError, match="rate limited"):
        await handler(build_send_job(QueueManager(), contact.id))

    assert store.list_messages(contact.id)[0]["status"] == "failed"
    assert store.list_analytics_events(event_name="message_failed")


def build_continuation_setup(tmp_path: Path):
    store = StateStore(str(tmp_path / "state.db"))
    queue = QueueManager()
    executor = ActionExecutor(
        contact_store=store,
        renderer=InlineTemplateRenderer(),
        queue=queue,
        analytics=store,
    )
    registry = AutomationRegistry()
    registry.load(
        [
            {
                "id": 4,
                "owner_id": 1,
                "name": "follow-up",
                "trigger_type": "keyword",
                "trigger_config": {"keywords": ["oi"]},
                "actions": [
                    {
                        "id": "1",
                        "type": "delay",
                        "config": {"delay": {"duration": 1, "unit": "hours"}},
                        "next_action_id": "2",
                    },
                    {"id": "2", "type": "add_tag", "config": {"tag": "follow_up"}},
                ],
            }
        ]
    )
    contact = store.find_or_create(1, "5511999999999", "whatsapp")
    handler = AutomationActionJobHandler(registry, store, executor)
    return store, queue, registry, contact, handler


@pytest.mark.asyncio
async def test_continuation_resumes_walk(tmp_path: Path) -> None:
    store, queue, _, contact, handler = build_continuation_setup(tmp_path)
    job = queue.create_job(
        1,
        JobType.AUTOMATION_ACTION,
        {
            "automation_id": 4,
            "contact_id": contact.id,
            "action_id": "2",
            "trigger_event": {"text": "oi", "channel": "whatsapp"},
        },
    )

    await handler(job)

    assert store.get_contact(contact.id).tags == ["follow_up"]


@pytest.mark.asyncio
async def test_continuation_for_removed_automation_is_dropped(tmp_path: Path) -> None:
    store, queue, registry, contact, handler = build_continuation_setup(tmp_path)
    registry.remove(4)
    job = queue.create_job(
        1,
        JobType.AUTOMATION_ACTION,
        {"automation_id": 4, "contact_id": contact.id, "action_id": "2"},
    )

    await handler(job)

    assert store.get_contact(contact.id).tags == []


@pytest.mark.asyncio
async def test_continuation_for_unknown_contact_is_dropped(tmp_path: Path) -> None:
    _, queue, _, _, handler = build_continuation_setup(tmp_path)
    job = queue.create_job(
        1,
        JobType.AUTOMATION_ACTION,
        {"automation_id": 4, "contact_id": 999, "action_id": "2"},
    )

    await handler(job)


@pytest.mark.asyncio
async def test_malformed_continuation_raises(tmp_path: Path) -> None:
    _, queue, _, _, handler = build_continuation_setup(tmp_path)
    job = queue.create_job(1, JobType.AUTOMATION_ACTION, {"action_id": "2"})

    with pytest.raises(QueueError):
        await handler(job)
