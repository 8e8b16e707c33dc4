from __future__ import annotations

import json
import logging

from src.logging_utils import configure_logging


def _flush_handlers() -> None:
    for handler in logging.getLogger().handlers:
        try:
            handler.flush()
        except Exception:
            pass


def test_configure_logging_redacts_telegram_bot_token(capsys) -> None:
    root_logger = logging.getLogger()
    old_handlers = list(root_logger.handlers)
    old_level = root_logger.level
    try:
        configure_logging("INFO")
        logging.getLogger("httpx").info(
            'HTTP Request: POST https://api.telegram.org/bot123:ABCDEF/getMe "HTTP/1.1 200 OK"'
        )
        _flush_handlers()
        captured = capsys.readouterr().out
        assert "bot123:ABCDEF" not in captured
        assert "api.telegram.org/bot<redacted>" in captured
    finally:
        root_logger.handlers.clear()
        for handler in old_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(old_level)


def test_structured_fields_are_promoted(capsys) -> None:
    root_logger = logging.getLogger()
    old_handlers = list(root_logger.handlers)
    old_level = root_logger.level
    try:
        configure_logging("INFO")
        logging.getLogger("src.automation_engine.executor").info(
            "walk segment finished",
            extra={
                "event": "walk_finished",
                "trace_id": "abc123",
                "automation_id": 4,
                "contact_id": 9,
                "status": "done",
                "ignored_field": "x",
            },
        )
        _flush_handlers()
        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["event"] == "walk_finished"
        assert payload["trace_id"] == "abc123"
        assert payload["automation_id"] == 4
        assert payload["contact_id"] == 9
        assert payload["status"] == "done"
        assert "ignored_field" not in payload
    finally:
        root_logger.handlers.clear()
        for handler in old_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(old_level)
