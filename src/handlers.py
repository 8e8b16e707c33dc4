from __future__ import annotations

import html
import logging
from typing import Any

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from src.automation_engine.engine import AutomationEngine
from src.automation_engine.models import WalkState
from src.config import Settings


logger = logging.getLogger(__name__)

TELEGRAM_CHANNEL = "telegram"
_MAX_REPLY_LENGTH = 3900


def chunk_lines(lines: list[str], max_length: int = _MAX_REPLY_LENGTH) -> list[str]:
    """Group lines into messages that fit in one Telegram reply."""
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for line in lines:
        line = line[:max_length]
        extra = len(line) + (1 if current else 0)
        if current and size + extra > max_length:
            chunks.append("\n".join(current))
            current, size = [], 0
            extra = len(line)
        current.append(line)
        size += extra
    if current:
        chunks.append("\n".join(current))
    return chunks


def format_handoff_message(payload: dict[str, Any]) -> str:
    name = payload.get("name") or "Cliente"
    lines = [
        "<b>Atendimento humano solicitado</b>",
        f"Contato: {html.escape(str(name))} ({html.escape(str(payload.get('phone') or '-'))})",
        f"Canal: {html.escape(str(payload.get('channel') or '-'))}",
        f"Automacao: {payload.get('automation_id')}",
    ]
    reason = payload.get("reason")
    if reason:
        lines.append(f"Motivo: {html.escape(str(reason))}")
    return "\n".join(lines)


class HandoffNotifier:
    """Forwards human-transfer requests to the operators chat."""

    def __init__(self, bot, chat_id: int | None) -> None:
        self._bot = bot
        self._chat_id = chat_id

    async def __call__(self, payload: dict[str, Any]) -> None:
        if self._chat_id is None:
            logger.info(
                "handoff requested without operators chat",
                extra={
                    "event": "handoff_unrouted",
                    "automation_id": payload.get("automation_id"),
                    "contact_id": payload.get("contact_id"),
                },
            )
            return
        try:
            await self._bot.send_message(
                chat_id=self._chat_id,
                text=format_handoff_message(payload),
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )
        except TelegramError:
            logger.warning(
                "failed to deliver handoff notification",
                extra={
                    "event": "handoff_delivery_error",
                    "automation_id": payload.get("automation_id"),
                    "contact_id": payload.get("contact_id"),
                    "severity": "alerta",
                },
                exc_info=True,
            )
            return
        logger.info(
            "handoff notification sent",
            extra={
                "event": "handoff_notified",
                "automation_id": payload.get("automation_id"),
                "contact_id": payload.get("contact_id"),
            },
        )


class InboundHandlers:
    """Telegram entry points that feed chat activity into the engine."""

    def __init__(self, settings: Settings, engine: AutomationEngine) -> None:
        self._settings = settings
        self._engine = engine

    async def start_handler(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        del context
        if not update.message:
            return
        await update.message.reply_text(
            "Ola! Envie uma mensagem para comecar. "
            "Operadores: /automacoes e /fila."
        )

    async def text_handler(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        del context
        message = update.message
        if not message or not message.text or update.effective_chat is None:
            return
        await self._dispatch(update, text=message.text)

    async def callback_handler(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        del context
        query = update.callback_query
        if query is None or update.effective_chat is None:
            return
        await query.answer()
        payload = (query.data or "").strip()
        if not payload:
            return
        await self._dispatch(
            update,
            text=payload,
            message_type="button",
            button_payload=payload,
        )

    async def automations_handler(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        del context
        message = update.message
        if not message or not self._is_operator_chat(update):
            return
        registry = self._engine.registry
        lines = [f"<b>Automacoes ativas</b> ({len(registry)})"]
        for automation in registry.all():
            lines.append(
                f"#{automation.id} {html.escape(automation.name)} "
                f"[{automation.trigger_type.value}] "
                f"{len(automation.actions)} acoes"
            )
        quarantined = registry.quarantined
        if quarantined:
            lines.append("")
            lines.append(f"<b>Em quarentena</b> ({len(quarantined)})")
            for automation_id, reason in sorted(quarantined.items()):
                lines.append(f"#{automation_id}: {html.escape(reason)}")
        for chunk in chunk_lines(lines):
            await message.reply_text(
                chunk,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )

    async def queue_handler(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        del context
        message = update.message
        if not message or not self._is_operator_chat(update):
            return
        lines = ["<b>Fila de jobs</b>"]
        for job_type, stats in self._engine.queue.stats().items():
            flags = []
            if stats["busy"]:
                flags.append("processando")
            if stats["paused"]:
                flags.append("pausada")
            suffix = f" ({', '.join(flags)})" if flags else ""
            lines.append(
                f"{job_type}: {stats['pending']} pendentes, "
                f"{stats['delayed']} agendados{suffix}"
            )
        await message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    async def _dispatch(
        self,
        update: Update,
        *,
        text: str,
        message_type: str = "text",
        button_payload: str | None = None,
    ) -> None:
        chat = update.effective_chat
        user = getattr(update, "effective_user", None)
        name = None
        if user is not None:
            name = getattr(user, "first_name", None) or getattr(user, "username", None)
        try:
            outcomes = await self._engine.handle_incoming_message(
                self._settings.default_owner_id,
                str(chat.id),
                text,
                channel=TELEGRAM_CHANNEL,
                message_type=message_type,
                name=name,
                button_payload=button_payload,
            )
        except Exception:
            logger.exception(
                "failed to process inbound telegram message",
                extra={"event": "inbound_error", "channel": TELEGRAM_CHANNEL},
            )
            return
        aborted = sum(1 for outcome in outcomes if outcome.state is WalkState.ABORTED)
        logger.info(
            "inbound telegram message processed",
            extra={
                "event": "inbound_processed",
                "channel": TELEGRAM_CHANNEL,
                "status": f"{len(outcomes)} walks, {aborted} aborted",
            },
        )

    def _is_operator_chat(self, update: Update) -> bool:
        operators_chat = self._settings.handoff_chat_id
        if operators_chat is None:
            return True
        chat = update.effective_chat
        return chat is not None and chat.id == operators_chat
