from __future__ import annotations

import logging
from typing import Any

from routine_sync.errors import DuplicateRecordError, NotFoundError, ValidationGapError
from routine_sync.models import KIND_CHECKLIST, KIND_USERS, PRIORITIES, Task, utc_now
from routine_sync.record_store import RecordStore
from routine_sync.recurrence import RecurrenceMaterializer
from routine_sync.repository import SettingsRepository, TaskRepository, new_id

logger = logging.getLogger(__name__)

TASK_EDITABLE_FIELDS = {
    "title",
    "description",
    "priority",
    "due_date",
    "due_time",
    "status",
    "tags",
    "is_recurring",
    "recurrence_type",
    "recurrence_days",
    "recurrence_time",
    "recurrence_start_date",
    "recurrence_end_date",
}
RECURRENCE_FIELDS = {
    "is_recurring",
    "recurrence_type",
    "recurrence_days",
    "recurrence_time",
    "recurrence_start_date",
    "recurrence_end_date",
}


def _clean_task_fields(payload: dict[str, Any]) -> dict[str, Any]:
    cleaned = {key: value for key, value in payload.items() if key in TASK_EDITABLE_FIELDS}
    if "priority" in cleaned:
        priority = str(cleaned["priority"] or "").strip().lower()
        if priority not in PRIORITIES:
            raise ValidationGapError(f"priority must be one of {', '.join(PRIORITIES)}")
        cleaned["priority"] = priority
    if "recurrence_type" in cleaned:
        cleaned["recurrence_type"] = str(cleaned["recurrence_type"] or "").strip().upper()
    if "tags" in cleaned:
        tags = cleaned["tags"] or []
        cleaned["tags"] = [str(tag) for tag in (tags if isinstance(tags, list) else [tags])]
    return cleaned


class TaskService:
    """Task CRUD that owns the implicit recurrence and cascade triggers."""

    def __init__(
        self,
        store: RecordStore,
        *,
        tasks: TaskRepository,
        settings: SettingsRepository,
        materializer: RecurrenceMaterializer,
        horizon_days: int = 14,
    ) -> None:
        self.store = store
        self.tasks = tasks
        self.settings = settings
        self.materializer = materializer
        self.horizon_days = horizon_days

    def _require(self, owner: str, task_id: str) -> Task:
        task = self.tasks.get(owner, task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def start_session(self, owner: str) -> dict[str, Any]:
        owner = str(owner or "").strip()
        if not owner:
            raise ValidationGapError("owner is required")
        if not self.store.find(KIND_USERS, {"user_key": owner}):
            try:
                self.store.create(
                    KIND_USERS,
                    {
                        "id": owner,
                        "user_key": owner,
                        "email": owner if "@" in owner else "",
                        "created_at": utc_now().isoformat(),
                    },
                )
            except DuplicateRecordError:
                logger.debug("user %s was registered by a concurrent session", owner)
        settings = self.settings.get(owner)
        try:
            materialized = self.materializer.materialize(owner, self.horizon_days).to_dict()
        except Exception:
            logger.exception("materializing recurring tasks for %s failed at session start", owner)
            materialized = None
        return {
            "user_key": owner,
            "settings": settings.to_record(),
            "tasks": [task.to_record() for task in self.tasks.list_for_owner(owner)],
            "checklist": self.store.find(KIND_CHECKLIST, {"user_key": owner}),
            "materialized": materialized,
        }

    def create_task(self, owner: str, payload: dict[str, Any]) -> Task:
        fields = _clean_task_fields(payload)
        if not str(fields.get("title") or "").strip():
            raise ValidationGapError("title is required")
        record = {"id": "", "user_key": owner, **fields}
        task = self.tasks.create(Task.from_record(record))
        if task.is_template:
            self.materializer.materialize(owner, self.horizon_days)
        return task

    def update_task(self, owner: str, task_id: str, payload: dict[str, Any]) -> Task:
        current = self._require(owner, task_id)
        fields = _clean_task_fields(payload)
        if current.template_task_id and RECURRENCE_FIELDS & set(fields):
            raise ValidationGapError("recurrence fields cannot be changed on a recurring instance")
        if fields:
            self.tasks.update(task_id, fields)
        task = self._require(owner, task_id)
        if task.is_template and RECURRENCE_FIELDS & set(fields):
            self.materializer.materialize(owner, self.horizon_days)
        return task

    def delete_task(self, owner: str, task_id: str) -> dict[str, Any]:
        task = self._require(owner, task_id)
        self.tasks.delete(task.id)

        checklist_removed = 0
        for item in self.store.find(KIND_CHECKLIST, {"task_id": task.id, "user_key": owner}):
            if self.store.delete(KIND_CHECKLIST, item["id"]):
                checklist_removed += 1

        instances_removed = 0
        for instance in self.tasks.instances_of(owner, task.id):
            if self.tasks.delete(instance.id):
                instances_removed += 1
        return {
            "id": task.id,
            "checklist_removed": checklist_removed,
            "instances_removed": instances_removed,
        }

    def add_checklist_item(self, owner: str, task_id: str, text: str) -> dict[str, Any]:
        self._require(owner, task_id)
        item = {
            "id": new_id(),
            "task_id": task_id,
            "user_key": owner,
            "text": str(text or ""),
            "done": False,
            "created_at": utc_now().isoformat(),
        }
        return self.store.create(KIND_CHECKLIST, item)
