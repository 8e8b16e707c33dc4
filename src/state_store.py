from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Any, Mapping

from src.automation_engine.models import (
    Contact,
    JobStatus,
    JobType,
    QueueJob,
    TriggerType,
)
from src.redaction import redact_payload


logger = logging.getLogger(__name__)

_CONTACT_FIELDS = frozenset(
    {"name", "email", "phone", "status", "tags", "custom_fields", "last_interaction"}
)
_AUTOMATION_FIELDS = frozenset(
    {"name", "description", "trigger_type", "trigger_config", "actions", "is_active"}
)


class StateStore:
    """SQLite persistence for contacts, automations, messages, analytics and jobs."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(self._db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._configure_pragmas()
        self._ensure_schema()

    def _configure_pragmas(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
                cursor.execute("PRAGMA busy_timeout=5000;")
                cursor.execute("PRAGMA foreign_keys=ON;")
            except Exception:
                logger.warning(
                    "failed to configure sqlite pragmas",
                    extra={"event": "sqlite_pragmas_error"},
                    exc_info=True,
                )

    def _ensure_schema(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS contacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    name TEXT,
                    email TEXT,
                    tags_json TEXT NOT NULL DEFAULT '[]',
                    custom_fields_json TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'active',
                    last_interaction TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (owner_id, channel, phone)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS automations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    trigger_type TEXT NOT NULL,
                    trigger_config_json TEXT NOT NULL DEFAULT '{}',
                    actions_json TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_automations_trigger
                ON automations(trigger_type, is_active)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS message_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    owner_id INTEGER NOT NULL,
                    contact_id INTEGER,
                    automation_id INTEGER,
                    direction TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    message_type TEXT NOT NULL,
                    content TEXT,
                    media_url TEXT,
                    status TEXT NOT NULL,
                    external_id TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS analytics_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    owner_id INTEGER NOT NULL,
                    event_name TEXT NOT NULL,
                    metadata_json TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    id TEXT PRIMARY KEY,
                    owner_id INTEGER NOT NULL,
                    job_type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    scheduled_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_jobs_status
                ON queue_jobs(status, scheduled_at)
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            try:
                self._connection.close()
            except Exception:
                logger.warning(
                    "failed to close sqlite connection",
                    extra={"event": "sqlite_close_error"},
                    exc_info=True,
                )

    # contacts

    def find_or_create(
        self,
        owner_id: int,
        identifier: str,
        channel: str,
        *,
        name: str | None = None,
    ) -> Contact:
        phone = str(identifier).strip()
        now_iso = _now_iso()
        with self._lock:
            cursor = self._connection.cursor()
            row = cursor.execute(
                "SELECT * FROM contacts WHERE owner_id = ? AND channel = ? AND phone = ?",
                (owner_id, channel, phone),
            ).fetchone()
            if row is None:
                cursor.execute(
                    """
                    INSERT INTO contacts (
                        owner_id, channel, phone, name, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (owner_id, channel, phone, name, now_iso, now_iso),
                )
                self._connection.commit()
                row = cursor.execute(
                    "SELECT * FROM contacts WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
                logger.info(
                    "contact created",
                    extra={
                        "event": "contact_created",
                        "owner_id": owner_id,
                        "contact_id": int(row["id"]),
                        "channel": channel,
                    },
                )
            elif name and not row["name"]:
                cursor.execute(
                    "UPDATE contacts SET name = ?, updated_at = ? WHERE id = ?",
                    (name, now_iso, row["id"]),
                )
                self._connection.commit()
                row = cursor.execute(
                    "SELECT * FROM contacts WHERE id = ?", (row["id"],)
                ).fetchone()
        return _row_to_contact(row)

    def get_contact(self, contact_id: int) -> Contact | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
        return _row_to_contact(row) if row else None

    def list_contacts(self, owner_id: int) -> list[Contact]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT * FROM contacts WHERE owner_id = ? ORDER BY id ASC",
                (owner_id,),
            ).fetchall()
        return [_row_to_contact(row) for row in rows]

    def update_contact(self, contact_id: int, patch: Mapping[str, Any]) -> Contact:
        unknown = set(patch) - _CONTACT_FIELDS
        if unknown:
            raise ValueError(f"unknown contact fields: {sorted(unknown)}")
        columns: list[str] = []
        values: list[Any] = []
        for key, value in patch.items():
            if key == "tags":
                columns.append("tags_json = ?")
                values.append(json.dumps(_unique(value), ensure_ascii=False))
            elif key == "custom_fields":
                columns.append("custom_fields_json = ?")
                values.append(json.dumps(dict(value), ensure_ascii=False, default=str))
            elif key == "last_interaction":
                columns.append("last_interaction = ?")
                values.append(_to_iso(value))
            else:
                columns.append(f"{key} = ?")
                values.append(value)
        with self._lock:
            cursor = self._connection.cursor()
            if columns:
                columns.append("updated_at = ?")
                values.extend([_now_iso(), contact_id])
                cursor.execute(
                    f"UPDATE contacts SET {', '.join(columns)} WHERE id = ?",
                    values,
                )
                self._connection.commit()
            row = cursor.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
        if row is None:
            raise KeyError(f"contact {contact_id} not found")
        return _row_to_contact(row)

    def add_tag(self, contact_id: int, tag: str) -> Contact:
        contact = self._require_contact(contact_id)
        if tag in contact.tags:
            return contact
        return self.update_contact(contact_id, {"tags": [*contact.tags, tag]})

    def remove_tag(self, contact_id: int, tag: str) -> Contact:
        contact = self._require_contact(contact_id)
        if tag not in contact.tags:
            return contact
        return self.update_contact(
            contact_id, {"tags": [item for item in contact.tags if item != tag]}
        )

    def set_custom_field(self, contact_id: int, name: str, value: Any) -> Contact:
        contact = self._require_contact(contact_id)
        fields = dict(contact.custom_fields)
        fields[name] = value
        return self.update_contact(contact_id, {"custom_fields": fields})

    def touch_last_interaction(
        self, contact_id: int, at: datetime | None = None
    ) -> Contact:
        return self.update_contact(
            contact_id, {"last_interaction": at or datetime.now(timezone.utc)}
        )

    def _require_contact(self, contact_id: int) -> Contact:
        contact = self.get_contact(contact_id)
        if contact is None:
            raise KeyError(f"contact {contact_id} not found")
        return contact

    # automations

    def create_automation(self, record: Mapping[str, Any]) -> dict:
        now_iso = _now_iso()
        trigger_type = _trigger_value(record.get("trigger_type"))
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO automations (
                    owner_id, name, description, trigger_type, trigger_config_json,
                    actions_json, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(record["owner_id"]),
                    str(record.get("name") or "").strip(),
                    record.get("description"),
                    trigger_type,
                    _dump_json(record.get("trigger_config"), {}),
                    _dump_json(record.get("actions"), []),
                    1 if record.get("is_active", True) else 0,
                    now_iso,
                    now_iso,
                ),
            )
            self._connection.commit()
            automation_id = int(cursor.lastrowid)
        return self.get_automation(automation_id)  # type: ignore[return-value]

    def get_automation(self, automation_id: int) -> dict | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM automations WHERE id = ?", (automation_id,)
            ).fetchone()
        return _row_to_automation(row) if row else None

    def find_automation_by_name(self, owner_id: int, name: str) -> dict | None:
        with self._lock:
            row = self._connection.execute(
                """
                SELECT * FROM automations
                WHERE owner_id = ? AND name = ?
                ORDER BY id ASC
                LIMIT 1
                """,
                (owner_id, name),
            ).fetchone()
        return _row_to_automation(row) if row else None

    def list_automations(self, owner_id: int) -> list[dict]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT * FROM automations WHERE owner_id = ? ORDER BY id ASC",
                (owner_id,),
            ).fetchall()
        return [_row_to_automation(row) for row in rows]

    def find_active_by_trigger_type(self, trigger_type: str) -> list[dict]:
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT * FROM automations
                WHERE trigger_type = ? AND is_active = 1
                ORDER BY id ASC
                """,
                (_trigger_value(trigger_type),),
            ).fetchall()
        return [_row_to_automation(row) for row in rows]

    def update_automation(
        self, automation_id: int, changes: Mapping[str, Any]
    ) -> dict | None:
        unknown = set(changes) - _AUTOMATION_FIELDS
        if unknown:
            raise ValueError(f"unknown automation fields: {sorted(unknown)}")
        columns: list[str] = []
        values: list[Any] = []
        for key, value in changes.items():
            if key == "trigger_config":
                columns.append("trigger_config_json = ?")
                values.append(_dump_json(value, {}))
            elif key == "actions":
                columns.append("actions_json = ?")
                values.append(_dump_json(value, []))
            elif key == "is_active":
                columns.append("is_active = ?")
                values.append(1 if value else 0)
            elif key == "trigger_type":
                columns.append("trigger_type = ?")
                values.append(_trigger_value(value))
            else:
                columns.append(f"{key} = ?")
                values.append(value)
        if columns:
            columns.append("updated_at = ?")
            values.extend([_now_iso(), automation_id])
            with self._lock:
                self._connection.execute(
                    f"UPDATE automations SET {', '.join(columns)} WHERE id = ?",
                    values,
                )
                self._connection.commit()
        return self.get_automation(automation_id)

    def set_automation_active(self, automation_id: int, active: bool) -> dict | None:
        return self.update_automation(automation_id, {"is_active": active})

    def delete_automation(self, automation_id: int) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    # templates

    def create_template(self, *, owner_id: int, name: str, content: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO message_templates (owner_id, name, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (owner_id, name, content, _now_iso()),
            )
            self._connection.commit()
            return int(cursor.lastrowid)

    def get_template_text(self, template_id: int) -> str | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT content FROM message_templates WHERE id = ?", (template_id,)
            ).fetchone()
        return str(row["content"]) if row else None

    # messages

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
    ) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    created_at, owner_id, contact_id, automation_id, direction,
                    channel, message_type, content, media_url, status, external_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _now_iso(),
                    owner_id,
                    contact_id,
                    automation_id,
                    direction,
                    channel,
                    message_type,
                    content,
                    media_url,
                    status,
                    external_id,
                ),
            )
            self._connection.commit()
            return int(cursor.lastrowid)

    def list_messages(self, contact_id: int, *, limit: int = 50) -> list[dict]:
        safe_limit = max(1, min(500, int(limit)))
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT id, created_at, owner_id, contact_id, automation_id, direction,
                       channel, message_type, content, media_url, status, external_id
                FROM messages
                WHERE contact_id = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (contact_id, safe_limit),
            ).fetchall()
        return [dict(row) for row in rows]

    # analytics

    def record(self, owner_id: int, event_name: str, metadata: Mapping[str, Any]) -> None:
        metadata_json = json.dumps(
            redact_payload(dict(metadata or {})), ensure_ascii=False
        )
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO analytics_events (created_at, owner_id, event_name, metadata_json)
                VALUES (?, ?, ?, ?)
                """,
                (_now_iso(), owner_id, event_name, metadata_json),
            )
            self._connection.commit()

    def list_analytics_events(
        self,
        *,
        owner_id: int | None = None,
        event_name: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        safe_limit = max(1, min(500, int(limit)))
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if event_name is not None:
            clauses.append("event_name = ?")
            params.append(event_name)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT created_at, owner_id, event_name, metadata_json
                FROM analytics_events
                {where_clause}
                ORDER BY id DESC
                LIMIT ?
                """,
                (*params, safe_limit),
            ).fetchall()
        events: list[dict] = []
        for row in rows:
            metadata = None
            if row["metadata_json"]:
                try:
                    metadata = json.loads(row["metadata_json"])
                except json.JSONDecodeError:
                    metadata = None
            events.append(
                {
                    "created_at": row["created_at"],
                    "owner_id": row["owner_id"],
                    "event_name": row["event_name"],
                    "metadata": metadata,
                }
            )
        return events

    # queue jobs

    def save_job(self, job: QueueJob) -> None:
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO queue_jobs (
                    id, owner_id, job_type, payload_json, priority, scheduled_at,
                    attempts, max_attempts, status, error_message, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    priority=excluded.priority,
                    scheduled_at=excluded.scheduled_at,
                    attempts=excluded.attempts,
                    max_attempts=excluded.max_attempts,
                    status=excluded.status,
                    error_message=excluded.error_message,
                    updated_at=excluded.updated_at
                """,
                (
                    job.id,
                    job.owner_id,
                    job.job_type.value,
                    json.dumps(job.payload, ensure_ascii=False, default=str),
                    job.priority,
                    _to_iso(job.scheduled_at),
                    job.attempts,
                    job.max_attempts,
                    job.status.value,
                    job.error_message,
                    _to_iso(job.created_at),
                    _to_iso(job.updated_at),
                ),
            )
            self._connection.commit()

    def get_job(self, job_id: str) -> QueueJob | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM queue_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_unfinished_jobs(self) -> list[QueueJob]:
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT * FROM queue_jobs
                WHERE status IN (?, ?)
                ORDER BY created_at ASC
                """,
                (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            ).fetchall()
        jobs: list[QueueJob] = []
        for row in rows:
            try:
                jobs.append(_row_to_job(row))
            except (ValueError, json.JSONDecodeError):
                logger.warning(
                    "skipping unreadable queue job %s",
                    row["id"],
                    extra={"event": "job_restore_error", "job_id": row["id"]},
                    exc_info=True,
                )
        return jobs


def _dump_json(value: Any, empty: Any) -> str:
    # Stored as given; the registry validates and quarantines bad shapes.
    if isinstance(value, Mapping):
        value = dict(value)
    elif isinstance(value, tuple):
        value = list(value)
    return json.dumps(value or empty, ensure_ascii=False, default=str)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def _parse_datetime(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _unique(items: Any) -> list[str]:
    seen: list[str] = []
    for item in items or []:
        text = str(item)
        if text not in seen:
            seen.append(text)
    return seen


def _trigger_value(value: Any) -> str:
    if isinstance(value, TriggerType):
        return value.value
    return str(value or "").strip()


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=int(row["id"]),
        owner_id=int(row["owner_id"]),
        phone=row["phone"],
        channel=row["channel"],
        name=row["name"],
        email=row["email"],
        tags=list(json.loads(row["tags_json"] or "[]")),
        custom_fields=dict(json.loads(row["custom_fields_json"] or "{}")),
        status=row["status"],
        last_interaction=_parse_datetime(row["last_interaction"]),
    )


def _row_to_automation(row: sqlite3.Row) -> dict:
    return {
        "id": int(row["id"]),
        "owner_id": int(row["owner_id"]),
        "name": row["name"],
        "description": row["description"] or "",
        "trigger_type": row["trigger_type"],
        "trigger_config": json.loads(row["trigger_config_json"] or "{}"),
        "actions": json.loads(row["actions_json"] or "[]"),
        "is_active": bool(row["is_active"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _row_to_job(row: sqlite3.Row) -> QueueJob:
    return QueueJob(
        id=row["id"],
        owner_id=int(row["owner_id"]),
        job_type=JobType(row["job_type"]),
        payload=json.loads(row["payload_json"]),
        priority=int(row["priority"]),
        scheduled_at=_parse_datetime(row["scheduled_at"]) or datetime.now(timezone.utc),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        status=JobStatus(row["status"]),
        error_message=row["error_message"],
        created_at=_parse_datetime(row["created_at"]) or datetime.now(timezone.utc),
        updated_at=_parse_datetime(row["updated_at"]) or datetime.now(timezone.utc),
    )
