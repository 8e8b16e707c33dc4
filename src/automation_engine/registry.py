from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from src.automation_engine.errors import ConfigurationError
from src.automation_engine.models import AutomationDefinition, TriggerType


logger = logging.getLogger(__name__)


class AutomationRegistry:
    """Read-mostly index of active automations.

    Writers build a new mapping and swap the reference under a lock, so
    readers always see either the old or the new snapshot, never a partial
    one. Records that fail validation are kept aside in ``quarantined``.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._automations: Mapping[int, AutomationDefinition] = MappingProxyType({})
        self._quarantined: Mapping[int, str] = MappingProxyType({})

    def __len__(self) -> int:
        return len(self._automations)

    def __contains__(self, automation_id: object) -> bool:
        return automation_id in self._automations

    @property
    def quarantined(self) -> Mapping[int, str]:
        return self._quarantined

    def get(self, automation_id: int) -> AutomationDefinition | None:
        return self._automations.get(automation_id)

    def all(self) -> list[AutomationDefinition]:
        return list(self._automations.values())

    def for_owner(self, owner_id: int) -> list[AutomationDefinition]:
        return [a for a in self._automations.values() if a.owner_id == owner_id]

    def get_by_trigger(
        self, trigger_type: TriggerType, owner_id: int | None = None
    ) -> list[AutomationDefinition]:
        return [
            a
            for a in self._automations.values()
            if a.trigger_type is trigger_type
            and (owner_id is None or a.owner_id == owner_id)
        ]

    def load(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Replace the whole index with ``records``; returns how many loaded."""
        automations: dict[int, AutomationDefinition] = {}
        quarantined: dict[int, str] = {}
        for record in records:
            definition = self._parse(record, quarantined)
            if definition is not None and definition.is_active:
                automations[definition.id] = definition
        with self._write_lock:
            self._automations = MappingProxyType(automations)
            self._quarantined = MappingProxyType(quarantined)
        logger.info(
            "automation registry loaded",
            extra={
                "event": "registry_loaded",
                "status": f"{len(automations)} active, {len(quarantined)} quarantined",
            },
        )
        return len(automations)

    def upsert(self, record: Mapping[str, Any]) -> AutomationDefinition | None:
        """Apply a created/updated/toggled record.

        Inactive or invalid definitions are evicted; the valid active one is
        returned.
        """
        automation_id = int(record["id"])
        with self._write_lock:
            automations = dict(self._automations)
            quarantined = dict(self._quarantined)
            quarantined.pop(automation_id, None)
            definition = self._parse(record, quarantined)
            if definition is not None and definition.is_active:
                automations[automation_id] = definition
            else:
                automations.pop(automation_id, None)
            self._automations = MappingProxyType(automations)
            self._quarantined = MappingProxyType(quarantined)
        if definition is not None and definition.is_active:
            return definition
        return None

    def remove(self, automation_id: int) -> bool:
        with self._write_lock:
            if automation_id not in self._automations and automation_id not in self._quarantined:
                return False
            automations = dict(self._automations)
            quarantined = dict(self._quarantined)
            automations.pop(automation_id, None)
            quarantined.pop(automation_id, None)
            self._automations = MappingProxyType(automations)
            self._quarantined = MappingProxyType(quarantined)
        return True

    @staticmethod
    def _parse(
        record: Mapping[str, Any], quarantined: dict[int, str]
    ) -> AutomationDefinition | None:
        try:
            return AutomationDefinition.from_record(record)
        except ConfigurationError as exc:
            reason, action_id = str(exc), exc.action_id
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            reason, action_id = f"malformed automation record: {exc!r}", None
        try:
            automation_id = int(record["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "automation record without a usable id skipped: %s",
                reason,
                extra={"event": "automation_quarantined"},
            )
            return None
        quarantined[automation_id] = reason
        logger.warning(
            "automation quarantined: %s",
            reason,
            extra={
                "event": "automation_quarantined",
                "automation_id": automation_id,
                "action_id": action_id,
            },
        )
        return None
