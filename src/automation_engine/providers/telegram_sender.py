from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

from src.automation_engine.models import SendResult


logger = logging.getLogger(__name__)


class TelegramChannelSender:
    """Delivers outbound messages to Telegram chats.

    The contact identifier on the ``telegram`` channel is the chat id.
    """

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send(
        self,
        channel: str,
        recipient: str,
        content: str,
        media_url: str | None = None,
        message_type: str = "text",
    ) -> SendResult:
        try:
            chat_id = int(recipient)
        except (TypeError, ValueError):
            return SendResult(success=False, error=f"invalid telegram chat id {recipient!r}")
        try:
            if media_url and message_type == "image":
                message = await self._bot.send_photo(
                    chat_id=chat_id, photo=media_url, caption=content or None
                )
            elif media_url and message_type == "video":
                message = await self._bot.send_video(
                    chat_id=chat_id, video=media_url, caption=content or None
                )
            elif media_url and message_type == "audio":
                message = await self._bot.send_audio(
                    chat_id=chat_id, audio=media_url, caption=content or None
                )
            elif media_url:
                message = await self._bot.send_document(
                    chat_id=chat_id, document=media_url, caption=content or None
                )
            else:
                message = await self._bot.send_message(
                    chat_id=chat_id,
                    text=content,
                    disable_web_page_preview=True,
                )
        except TelegramError as exc:
            logger.warning(
                "telegram send failed",
                extra={"event": "telegram_send_error", "channel": channel},
                exc_info=True,
            )
            return SendResult(success=False, error=str(exc))
        return SendResult(success=True, external_id=str(message.message_id))
