from __future__ import annotations

import inspect
import logging
from typing import Any, Callable


logger = logging.getLogger(__name__)

HUMAN_TRANSFER_REQUESTED = "human_transfer_requested"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"

Listener = Callable[[dict[str, Any]], Any]


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_name: str, listener: Listener) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def unsubscribe(self, event_name: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_name, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event_name, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "event listener failed",
                    extra={"event": "listener_error", "status": event_name},
                )
