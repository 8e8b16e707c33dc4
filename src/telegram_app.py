from __future__ import annotations

import logging
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    MessageHandler,
    filters,
)

from src.automation_engine.engine import AutomationEngine
from src.automation_engine.events import HUMAN_TRANSFER_REQUESTED
from src.automation_engine.providers.channel_router import ChannelRouter
from src.automation_engine.providers.telegram_sender import TelegramChannelSender
from src.automation_engine.templates import InlineTemplateRenderer
from src.config import Settings
from src.handlers import TELEGRAM_CHANNEL, HandoffNotifier, InboundHandlers
from src.state_store import StateStore

logger = logging.getLogger(__name__)


async def _post_init(application: Application) -> None:
    engine = application.bot_data.get("automation_engine")
    if engine is not None:
        await engine.start()


async def _post_shutdown(application: Application) -> None:
    engine = application.bot_data.get("automation_engine")
    if engine is not None:
        await engine.stop()
    state_store = application.bot_data.get("state_store")
    if state_store is not None:
        state_store.close()


async def _error_handler(update, context) -> None:  # pragma: no cover - runtime safety
    logger.exception(
        "unhandled telegram exception",
        exc_info=context.error,
        extra={
            "event": "telegram_unhandled_error",
            "status": type(update).__name__ if update is not None else "none",
        },
    )


def build_engine(
    settings: Settings,
    state_store: StateStore,
    router: ChannelRouter,
) -> AutomationEngine:
    return AutomationEngine.build(
        settings,
        contact_store=state_store,
        automation_store=state_store,
        analytics=state_store,
        message_log=state_store,
        channel_sender=router,
        renderer=InlineTemplateRenderer(template_lookup=state_store.get_template_text),
        job_store=state_store,
    )


def build_application(settings: Settings) -> Application:
    state_store = StateStore(settings.state_db_path)
    builder = (
        ApplicationBuilder()
        .token(settings.telegram_bot_token)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
    )
    application = builder.build()

    router = ChannelRouter({TELEGRAM_CHANNEL: TelegramChannelSender(application.bot)})
    engine = build_engine(settings, state_store, router)
    engine.events.subscribe(
        HUMAN_TRANSFER_REQUESTED,
        HandoffNotifier(application.bot, settings.handoff_chat_id),
    )
    application.bot_data["automation_engine"] = engine
    application.bot_data["state_store"] = state_store

    handlers = InboundHandlers(settings=settings, engine=engine)
    application.add_handler(CommandHandler("start", handlers.start_handler))
    application.add_handler(CommandHandler("automacoes", handlers.automations_handler))
    application.add_handler(CommandHandler("fila", handlers.queue_handler))
    application.add_handler(CallbackQueryHandler(handlers.callback_handler))
    application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, handlers.text_handler)
    )
    application.add_error_handler(_error_handler)
    return application
