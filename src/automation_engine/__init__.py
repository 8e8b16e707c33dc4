"""Trigger-driven automation engine for conversational contacts."""

from src.automation_engine.engine import AutomationEngine
from src.automation_engine.errors import (
    AutomationError,
    ConfigurationError,
    ExecutionError,
    QueueError,
)
from src.automation_engine.executor import ActionExecutor
from src.automation_engine.models import (
    AutomationDefinition,
    Contact,
    InboundEvent,
    JobType,
    QueueJob,
    TriggerType,
    WalkOutcome,
    WalkState,
)
from src.automation_engine.queue_manager import QueueManager
from src.automation_engine.registry import AutomationRegistry

__all__ = [
    "ActionExecutor",
    "AutomationDefinition",
    "AutomationEngine",
    "AutomationError",
    "AutomationRegistry",
    "ConfigurationError",
    "Contact",
    "ExecutionError",
    "InboundEvent",
    "JobType",
    "QueueError",
    "QueueJob",
    "QueueManager",
    "TriggerType",
    "WalkOutcome",
    "WalkState",
]
