from __future__ import annotations


class AutomationError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AutomationError):
    """An automation definition cannot be walked as written."""

    def __init__(
        self,
        message: str,
        *,
        automation_id: int | None = None,
        action_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.automation_id = automation_id
        self.action_id = action_id


class ExecutionError(AutomationError):
    """An action side effect failed while walking a chain."""


class QueueError(AutomationError):
    """A queued job could not be accepted or handled."""
