from __future__ import annotations

from dataclasses import dataclass
import os
import re

from dotenv import load_dotenv


_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    default_owner_id: int = 1
    handoff_chat_id: int | None = None
    log_level: str = "INFO"
    state_db_path: str = "data/automation_state.db"
    automations_file: str | None = None
    bot_timezone: str = "America/Sao_Paulo"
    queue_poll_interval_seconds: float = 1.0
    queue_sweep_interval_seconds: float = 60.0
    queue_max_concurrent: int = 5
    queue_retry_base_delay_seconds: float = 60.0
    queue_retry_max_delay_seconds: float = 300.0
    queue_max_attempts: int = 3
    scheduler_enabled: bool = True
    schedule_poll_interval_seconds: int = 30
    schedule_tolerance_seconds: int = 60
    webhook_timeout_seconds: float = 10.0
    human_handoff_tag: str = "needs_human"
    button_payload_prefix: str = "BUTTON_PAYLOAD:"


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}: expected integer, got {raw!r}.") from exc


def _read_positive_int(name: str, default: int) -> int:
    value = _read_int(name, default)
    if value <= 0:
        raise ValueError(f"Invalid {name}: must be greater than zero.")
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}: expected number, got {raw!r}.") from exc
    if value <= 0:
        raise ValueError(f"Invalid {name}: must be greater than zero.")
    return value


def _read_optional_str(name: str) -> str | None:
    raw = os.getenv(name, "").strip()
    return raw or None


def _read_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}: expected integer, got {raw!r}.") from exc


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, str(default)).strip().lower()
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid time {value!r}: expected HH:MM.")
    return int(match.group(1)), int(match.group(2))


def load_settings() -> Settings:
    # Ensure local .env values win over stale shell/system environment values.
    load_dotenv(override=True)

    token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    if not token:
        raise ValueError("Missing TELEGRAM_BOT_TOKEN in environment.")

    max_delay = _read_float("QUEUE_RETRY_MAX_DELAY_SECONDS", 300.0)
    base_delay = _read_float("QUEUE_RETRY_BASE_DELAY_SECONDS", 60.0)
    if base_delay > max_delay:
        raise ValueError(
            "Invalid QUEUE_RETRY_BASE_DELAY_SECONDS: cannot exceed "
            "QUEUE_RETRY_MAX_DELAY_SECONDS."
        )

    return Settings(
        telegram_bot_token=token,
        default_owner_id=_read_int("DEFAULT_OWNER_ID", 1),
        handoff_chat_id=_read_optional_int("HANDOFF_CHAT_ID"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        state_db_path=os.getenv(
            "STATE_DB_PATH", "data/automation_state.db"
        ).strip(),
        automations_file=_read_optional_str("AUTOMATIONS_FILE"),
        bot_timezone=os.getenv("BOT_TIMEZONE", "America/Sao_Paulo").strip(),
        queue_poll_interval_seconds=_read_float("QUEUE_POLL_INTERVAL_SECONDS", 1.0),
        queue_sweep_interval_seconds=_read_float(
            "QUEUE_SWEEP_INTERVAL_SECONDS", 60.0
        ),
        queue_max_concurrent=_read_positive_int("QUEUE_MAX_CONCURRENT", 5),
        queue_retry_base_delay_seconds=base_delay,
        queue_retry_max_delay_seconds=max_delay,
        queue_max_attempts=_read_positive_int("QUEUE_MAX_ATTEMPTS", 3),
        scheduler_enabled=_read_bool("SCHEDULER_ENABLED", True),
        schedule_poll_interval_seconds=_read_positive_int(
            "SCHEDULE_POLL_INTERVAL_SECONDS", 30
        ),
        schedule_tolerance_seconds=_read_positive_int(
            "SCHEDULE_TOLERANCE_SECONDS", 60
        ),
        webhook_timeout_seconds=_read_float("WEBHOOK_TIMEOUT_SECONDS", 10.0),
        human_handoff_tag=os.getenv("HUMAN_HANDOFF_TAG", "needs_human").strip()
        or "needs_human",
        button_payload_prefix=os.getenv(
            "BUTTON_PAYLOAD_PREFIX", "BUTTON_PAYLOAD:"
        ).strip()
        or "BUTTON_PAYLOAD:",
    )
