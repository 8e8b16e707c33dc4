from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol

from src.automation_engine.models import Contact, QueueJob, SendResult


class ContactStore(Protocol):
    def find_or_create(
        self,
        owner_id: int,
        identifier: str,
        channel: str,
        *,
        name: str | None = None,
    ) -> Contact: ...

    def get_contact(self, contact_id: int) -> Contact | None: ...

    def update_contact(self, contact_id: int, patch: Mapping[str, Any]) -> Contact: ...

    def add_tag(self, contact_id: int, tag: str) -> Contact: ...

    def remove_tag(self, contact_id: int, tag: str) -> Contact: ...

    def set_custom_field(self, contact_id: int, name: str, value: Any) -> Contact: ...

    def list_contacts(self, owner_id: int) -> list[Contact]: ...


class ChannelSender(Protocol):
    async def send(
        self,
        channel: str,
        recipient: str,
        content: str,
        media_url: str | None = None,
        message_type: str = "text",
    ) -> SendResult:
        """Deliver one message through the transport for ``channel``."""


class TemplateRenderer(Protocol):
    def render(
        self,
        template: str | int,
        contact: Contact,
        variables: Mapping[str, Any] | None = None,
    ) -> str: ...


class AnalyticsSink(Protocol):
    def record(
        self, owner_id: int, event_name: str, metadata: Mapping[str, Any]
    ) -> None: ...


class AutomationStore(Protocol):
    def get_automation(self, automation_id: int) -> dict | None: ...

    def create_automation(self, record: Mapping[str, Any]) -> dict: ...

    def update_automation(
        self, automation_id: int, changes: Mapping[str, Any]
    ) -> dict | None: ...

    def set_automation_active(self, automation_id: int, active: bool) -> dict | None: ...

    def delete_automation(self, automation_id: int) -> bool: ...

    def find_active_by_trigger_type(self, trigger_type: str) -> list[dict]: ...

    def find_automation_by_name(self, owner_id: int, name: str) -> dict | None: ...


class MessageLog(Protocol):
    def record_message(
        self,
        *,
        owner_id: int,
        contact_id: int | None,
        direction: str,
        channel: str,
        content: str,
        message_type: str = "text",
        status: str = "sent",
        media_url: str | None = None,
        automation_id: int | None = None,
        external_id: str | None = None,
    ) -> int: ...


class JobStore(Protocol):
    def save_job(self, job: QueueJob) -> None: ...

    def list_unfinished_jobs(self) -> list[QueueJob]: ...


JobHandler = Callable[[QueueJob], Awaitable[None]]
