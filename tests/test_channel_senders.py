from __future__ import annotations

import pytest
from telegram.error import TelegramError

from src.automation_engine.models import SendResult
from src.automation_engine.providers.channel_router import ChannelRouter
from src.automation_engine.providers.telegram_sender import TelegramChannelSender


class FakeSent:
    def __init__(self, message_id: int) -> None:
        self.message_id = message_id


class FakeBot:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    async def send_message(self, **kwargs):
        self.calls.append(("send_message", kwargs))
        return FakeSent(message_id=10)

    async def send_photo(self, **kwargs):
        self.calls.append(("send_photo", kwargs))
        return FakeSent(message_id=11)

    async def send_document(self, **kwargs):
        self.calls.append(("send_document", kwargs))
        return FakeSent(message_id=12)


class FailingBot(FakeBot):
    async def send_message(self, **kwargs):
        del kwargs
        raise TelegramError("Chat not found")


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    async def send(self, channel, recipient, content, media_url=None, message_type="text"):
        self.sent.append((channel, recipient, content, media_url, message_type))
        return SendResult(success=True, external_id="x")


@pytest.mark.asyncio
async def test_telegram_sender_sends_text() -> None:
    bot = FakeBot()
    result = await TelegramChannelSender(bot).send("telegram", "123", "Olá")

    assert result == SendResult(success=True, external_id="10")
    name, kwargs = bot.calls[0]
    assert name == "send_message"
    assert kwargs["chat_id"] == 123
    assert kwargs["text"] == "Olá"


@pytest.mark.asyncio
async def test_telegram_sender_routes_media() -> None:
    bot = FakeBot()
    sender = TelegramChannelSender(bot)

    await sender.send(
        "telegram", "123", "foto", media_url="https://x/img.png", message_type="image"
    )
    await sender.send(
        "telegram", "123", "", media_url="https://x/doc.pdf", message_type="document"
    )

    assert [name for name, _ in bot.calls] == ["send_photo", "send_document"]
    assert bot.calls[0][1]["caption"] == "foto"
    assert bot.calls[1][1]["caption"] is None


@pytest.mark.asyncio
async def test_telegram_sender_reports_failures() -> None:
    result = await TelegramChannelSender(FailingBot()).send("telegram", "123", "Olá")
    assert result.success is False
    assert "Chat not found" in result.error

    invalid = await TelegramChannelSender(FakeBot()).send("telegram", "abc", "Olá")
    assert invalid.success is False


@pytest.mark.asyncio
async def test_router_dispatches_by_channel() -> None:
    telegram = RecordingSender()
    router = ChannelRouter({"Telegram": telegram})

    result = await router.send("telegram", "123", "oi", message_type="text")
    missing = await router.send("whatsapp", "5511999999999", "oi")

    assert result.success is True
    assert telegram.sent == [("telegram", "123", "oi", None, "text")]
    assert missing.success is False
    assert "whatsapp" in missing.error
    assert router.channels() == ["telegram"]
