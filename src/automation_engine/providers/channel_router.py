from __future__ import annotations

from src.automation_engine.base import ChannelSender
from src.automation_engine.models import SendResult


class ChannelRouter:
    """ChannelSender that dispatches by channel name."""

    def __init__(self, senders: dict[str, ChannelSender] | None = None) -> None:
        self._senders: dict[str, ChannelSender] = {}
        for channel, sender in (senders or {}).items():
            self.register(channel, sender)

    def register(self, channel: str, sender: ChannelSender) -> None:
        self._senders[channel.strip().lower()] = sender

    def channels(self) -> list[str]:
        return sorted(self._senders)

    async def send(
        self,
        channel: str,
        recipient: str,
        content: str,
        media_url: str | None = None,
        message_type: str = "text",
    ) -> SendResult:
        sender = self._senders.get((channel or "").strip().lower())
        if sender is None:
            return SendResult(success=False, error=f"no transport for channel {channel!r}")
        return await sender.send(
            channel,
            recipient,
            content,
            media_url=media_url,
            message_type=message_type,
        )
