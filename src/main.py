from __future__ import annotations

import logging
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from telegram import Update

from src.config import load_settings
from src.logging_utils import configure_logging
from src.telegram_app import build_application


logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info(
        "starting automation bot",
        extra={
            "event": "bot_starting",
            "owner_id": settings.default_owner_id,
            "status": "scheduler on" if settings.scheduler_enabled else "scheduler off",
        },
    )
    application = build_application(settings)
    application.run_polling(allowed_updates=[Update.MESSAGE, Update.CALLBACK_QUERY])


if __name__ == "__main__":
    main()
