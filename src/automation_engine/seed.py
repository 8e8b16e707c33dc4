from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from src.automation_engine.base import AutomationStore
from src.automation_engine.errors import ConfigurationError
from src.automation_engine.models import AutomationDefinition


logger = logging.getLogger(__name__)


def read_automations_file(path: str | Path) -> list[dict[str, Any]]:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"invalid automations file {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("automations", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"automations file {path} must hold a list")
    return [item for item in data if isinstance(item, dict)]


def import_automations_file(
    path: str | Path,
    store: AutomationStore,
    *,
    default_owner_id: int = 1,
) -> int:
    """Create the automations listed in ``path`` that do not exist yet.

    Automations are matched by owner and name, so importing the same file
    twice is a no-op. Entries that fail validation are logged and skipped.
    Actions run by following ``next_action_id`` from the first one, so
    entries with actions that chain can never reach get a warning.
    """
    file_path = Path(path)
    if not file_path.exists():
        logger.warning(
            "automations file not found: %s",
            file_path,
            extra={"event": "seed_missing_file"},
        )
        return 0

    created = 0
    for index, item in enumerate(read_automations_file(file_path), start=1):
        record = dict(item)
        record.setdefault("owner_id", default_owner_id)
        record.setdefault("is_active", True)
        name = str(record.get("name") or "").strip()
        if not name:
            logger.warning(
                "skipping unnamed automation #%d",
                index,
                extra={"event": "seed_skipped"},
            )
            continue
        try:
            definition = AutomationDefinition.from_record({**record, "id": 0})
        except (ConfigurationError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "skipping invalid automation %s: %s",
                name,
                exc,
                extra={"event": "seed_skipped"},
            )
            continue
        if store.find_automation_by_name(definition.owner_id, name) is not None:
            continue
        unreachable = definition.unreachable_action_ids()
        if unreachable:
            logger.warning(
                "automation %s has actions no next_action_id leads to: %s",
                name,
                ", ".join(unreachable),
                extra={"event": "seed_unreachable_actions", "owner_id": definition.owner_id},
            )
        stored = store.create_automation(record)
        created += 1
        logger.info(
            "automation seeded: %s",
            name,
            extra={
                "event": "seed_created",
                "owner_id": stored.get("owner_id"),
                "automation_id": stored.get("id"),
            },
        )
    return created
