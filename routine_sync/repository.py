from __future__ import annotations

import uuid
from typing import Any

from routine_sync.errors import DuplicateRecordError
from routine_sync.models import (
    KIND_SETTINGS,
    KIND_TASKS,
    SYNC_DIRECTIONS,
    Task,
    UserSyncSettings,
    utc_now,
)
from routine_sync.record_store import RecordStore


SETTINGS_UPDATABLE_FIELDS = {
    "calendar_id",
    "enable_sync",
    "timezone",
    "default_event_duration_min",
    "sync_direction",
    "allow_import_all",
    "default_event_hour",
}


def new_id() -> str:
    return str(uuid.uuid4())


class TaskRepository:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def all_tasks(self) -> list[Task]:
        return [Task.from_record(record) for record in self.store.find(KIND_TASKS)]

    def list_for_owner(self, owner: str) -> list[Task]:
        return [Task.from_record(record) for record in self.store.find(KIND_TASKS, {"user_key": owner})]

    def get(self, owner: str, task_id: str) -> Task | None:
        records = self.store.find(KIND_TASKS, {"id": task_id, "user_key": owner})
        return Task.from_record(records[0]) if records else None

    def find_by_event(self, owner: str, event_id: str) -> list[Task]:
        records = self.store.find(KIND_TASKS, {"user_key": owner, "calendar_event_id": event_id})
        return [Task.from_record(record) for record in records]

    def instances_of(self, owner: str, template_id: str) -> list[Task]:
        records = self.store.find(KIND_TASKS, {"user_key": owner, "template_task_id": template_id})
        return [Task.from_record(record) for record in records]

    def owners_with_templates(self) -> list[str]:
        owners: list[str] = []
        for task in self.all_tasks():
            if task.is_template and task.user_key not in owners:
                owners.append(task.user_key)
        return owners

    def create(self, task: Task) -> Task:
        now = utc_now().isoformat()
        if not task.id:
            task.id = new_id()
        task.created_at = task.created_at or now
        task.updated_at = now
        self.store.create(KIND_TASKS, task.to_record())
        return task

    def update(self, task_id: str, fields: dict[str, Any]) -> bool:
        payload = dict(fields)
        payload["updated_at"] = utc_now().isoformat()
        return self.store.update(KIND_TASKS, task_id, payload)

    def delete(self, task_id: str) -> bool:
        return self.store.delete(KIND_TASKS, task_id)


class SettingsRepository:
    """Per-owner sync settings, created with defaults on first read."""

    def __init__(self, store: RecordStore, default_timezone: str = "UTC") -> None:
        self.store = store
        self.default_timezone = default_timezone or "UTC"

    def get(self, owner: str) -> UserSyncSettings:
        records = self.store.find(KIND_SETTINGS, {"user_key": owner})
        if records:
            return UserSyncSettings.from_record(records[0])
        now = utc_now().isoformat()
        settings = UserSyncSettings(
            user_key=owner,
            timezone=self.default_timezone,
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.create(KIND_SETTINGS, settings.to_record())
        except DuplicateRecordError:
            records = self.store.find(KIND_SETTINGS, {"user_key": owner})
            if not records:
                raise
            return UserSyncSettings.from_record(records[0])
        return settings

    def all(self) -> list[UserSyncSettings]:
        return [UserSyncSettings.from_record(record) for record in self.store.find(KIND_SETTINGS)]

    def update(self, owner: str, updates: dict[str, Any]) -> UserSyncSettings:
        current = self.get(owner)
        cleaned = {key: value for key, value in updates.items() if key in SETTINGS_UPDATABLE_FIELDS}
        if "sync_direction" in cleaned:
            direction = str(cleaned["sync_direction"] or "").strip().upper()
            if direction not in SYNC_DIRECTIONS:
                raise ValueError(f"sync_direction must be one of {', '.join(SYNC_DIRECTIONS)}")
            cleaned["sync_direction"] = direction
        merged = current.to_record()
        merged.update(cleaned)
        merged["updated_at"] = utc_now().isoformat()
        settings = UserSyncSettings.from_record(merged)
        self.store.update(KIND_SETTINGS, owner, settings.to_record())
        return settings

    def touch_last_sync(self, owner: str, when: str | None = None) -> None:
        self.get(owner)
        now = utc_now().isoformat()
        self.store.update(KIND_SETTINGS, owner, {"last_sync_at": when or now, "updated_at": now})
