from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Protocol

from routine_sync.errors import (
    MissingDueDateError,
    NotFoundError,
    SyncDisabledError,
    ValidationGapError,
)
from routine_sync.models import (
    SYNC_BOTH,
    SYNC_DIRECTIONS,
    SYNC_EXPORT_ONLY,
    SYNC_IMPORT_ONLY,
    CalendarEvent,
    CalendarSyncSummary,
    ImportSummary,
    Task,
    UserSyncSettings,
    owner_zone,
    parse_civil_date,
    parse_civil_time,
    utc_now,
)
from routine_sync.repository import SettingsRepository, TaskRepository
from routine_sync.state_store import StateStore
from routine_sync.task_block import build_event_text, has_calendar_marker, strip_event_text

logger = logging.getLogger(__name__)

CLOSED_STATUSES = {"done", "completed"}


class CalendarService(Protocol):
    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]: ...

    def get_event(self, calendar_id: str, uid: str) -> CalendarEvent | None: ...

    def create_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent: ...

    def update_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent: ...


def _should_export(task: Task) -> bool:
    if task.is_template or not task.due_date:
        return False
    return bool(task.calendar_event_id) or task.status.lower() not in CLOSED_STATUSES


class CalendarBridge:
    """Exports tasks to calendar events and imports events back into tasks.

    Managed events carry ``[ROUTINE_APP_SYNC]`` and the task id in their
    description. The task's ``calendar_event_id`` is the only link; the bridge
    never deletes events.
    """

    def __init__(
        self,
        *,
        tasks: TaskRepository,
        settings: SettingsRepository,
        calendar: CalendarService,
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.settings = settings
        self.calendar = calendar
        self.state_store = state_store
        self.clock = clock

    def _log(self, owner: str, direction: str, entity_type: str, status: str, **kwargs: Any) -> None:
        if self.state_store is None:
            return
        self.state_store.record_sync_log(
            user_key=owner,
            direction=direction,
            entity_type=entity_type,
            status=status,
            **kwargs,
        )

    def _require_enabled(self, owner: str) -> UserSyncSettings:
        settings = self.settings.get(owner)
        if not settings.enable_sync:
            raise SyncDisabledError(f"Calendar sync is not enabled for {owner}.")
        return settings

    def _build_event(self, task: Task, settings: UserSyncSettings) -> CalendarEvent:
        try:
            due_day = parse_civil_date(task.due_date)
            due_time = parse_civil_time(task.due_time)
        except ValueError as exc:
            raise ValidationGapError(f"Task {task.id} has an unreadable due date/time: {exc}") from exc
        if due_day is None:
            raise MissingDueDateError(f"Task {task.id} has no due date.")

        summary, description = build_event_text(task.id, task.title, task.priority, task.description)
        if due_time is None:
            return CalendarEvent(
                calendar_id=settings.calendar_id,
                summary=summary,
                description=description,
                start=due_day,
                end=due_day + timedelta(days=1),
                all_day=True,
            )
        start = datetime.combine(due_day, due_time, tzinfo=owner_zone(settings.timezone))
        return CalendarEvent(
            calendar_id=settings.calendar_id,
            summary=summary,
            description=description,
            start=start,
            end=start + timedelta(minutes=settings.default_event_duration_min),
            all_day=False,
        )

    def _export(self, task: Task, settings: UserSyncSettings) -> dict[str, Any]:
        if task.is_template:
            raise ValidationGapError(f"Task {task.id} is a recurring template and is never exported.")
        event = self._build_event(task, settings)
        calendar_id = settings.calendar_id

        created = False
        relinked = False
        saved: CalendarEvent | None = None
        if task.calendar_event_id:
            existing = self.calendar.get_event(calendar_id, task.calendar_event_id)
            if existing is not None:
                try:
                    saved = self.calendar.update_event(
                        calendar_id,
                        event.with_updates(uid=existing.uid, href=existing.href),
                    )
                except NotFoundError:
                    saved = None
            if saved is None:
                relinked = True
        if saved is None:
            saved = self.calendar.create_event(calendar_id, event)
            created = True

        self.tasks.update(
            task.id,
            {"calendar_event_id": saved.uid, "calendar_updated_at": self.clock().isoformat()},
        )
        return {"task_id": task.id, "event_id": saved.uid, "created": created, "relinked": relinked}

    def export_task(self, owner: str, task_id: str) -> dict[str, Any]:
        settings = self._require_enabled(owner)
        task = self.tasks.get(owner, task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        try:
            result = self._export(task, settings)
        except Exception as exc:
            self._log(owner, "EXPORT", "TASK", "ERROR", entity_id=task_id, message=str(exc))
            raise
        message = "task exported (relinked)" if result["relinked"] else "task exported"
        self._log(
            owner,
            "EXPORT",
            "TASK",
            "SUCCESS",
            entity_id=task_id,
            calendar_event_id=result["event_id"],
            message=message,
        )
        return result

    def unlink_task(self, owner: str, task_id: str) -> dict[str, Any]:
        task = self.tasks.get(owner, task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        was_linked = bool(task.calendar_event_id)
        if was_linked or task.calendar_updated_at:
            self.tasks.update(task_id, {"calendar_event_id": "", "calendar_updated_at": ""})
        self._log(
            owner,
            "UNLINK",
            "TASK",
            "SUCCESS",
            entity_id=task_id,
            calendar_event_id=task.calendar_event_id,
            message="task unlinked" if was_linked else "task was not linked",
        )
        return {"id": task_id, "unlinked": was_linked}

    @staticmethod
    def _event_due(event: CalendarEvent, settings: UserSyncSettings) -> tuple[str, str]:
        start = event.start
        if start is None:
            raise MissingDueDateError(f"Event {event.uid} has no start.")
        if isinstance(start, datetime):
            if event.all_day:
                return start.date().isoformat(), ""
            local = start.astimezone(owner_zone(settings.timezone))
            return local.date().isoformat(), local.strftime("%H:%M")
        if isinstance(start, date):
            return start.isoformat(), ""
        raise MissingDueDateError(f"Event {event.uid} has an unreadable start.")

    def _import_window(self, settings: UserSyncSettings, past_days: int, future_days: int) -> ImportSummary:
        owner = settings.user_key
        now = self.clock()
        events = self.calendar.list_events(
            settings.calendar_id,
            now - timedelta(days=max(0, past_days)),
            now + timedelta(days=max(0, future_days)),
        )
        summary = ImportSummary(total=len(events))
        for event in events:
            try:
                if not has_calendar_marker(event.description) and not settings.allow_import_all:
                    summary.skipped += 1
                    continue
                title, description = strip_event_text(event.summary, event.description)
                due_date, due_time = self._event_due(event, settings)
                fields = {
                    "title": title,
                    "description": description,
                    "due_date": due_date,
                    "due_time": due_time,
                    "calendar_event_id": event.uid,
                    "calendar_updated_at": self.clock().isoformat(),
                }
                linked = self.tasks.find_by_event(owner, event.uid)
                if linked:
                    self.tasks.update(linked[0].id, fields)
                    summary.updated += 1
                    self._log(
                        owner,
                        "IMPORT",
                        "TASK",
                        "SUCCESS",
                        entity_id=linked[0].id,
                        calendar_event_id=event.uid,
                        message="task updated",
                    )
                    continue
                task = self.tasks.create(
                    Task(
                        id="",
                        user_key=owner,
                        priority="normal",
                        title=title,
                        description=description,
                        due_date=due_date,
                        due_time=due_time,
                        calendar_event_id=event.uid,
                        calendar_updated_at=fields["calendar_updated_at"],
                    )
                )
                summary.imported += 1
                self._log(
                    owner,
                    "IMPORT",
                    "TASK",
                    "SUCCESS",
                    entity_id=task.id,
                    calendar_event_id=event.uid,
                    message="task created",
                )
            except Exception as exc:
                summary.errors += 1
                logger.warning("importing event %s for %s failed: %s", event.uid, owner, exc)
                self._log(owner, "IMPORT", "EVENT", "ERROR", calendar_event_id=event.uid, message=str(exc))
        return summary

    def import_events(self, owner: str, past_days: int = 7, future_days: int = 30) -> ImportSummary:
        settings = self._require_enabled(owner)
        return self._import_window(settings, past_days, future_days)

    def sync_calendar(
        self,
        owner: str,
        mode: str | None = None,
        past_days: int = 7,
        future_days: int = 30,
    ) -> CalendarSyncSummary:
        settings = self._require_enabled(owner)
        resolved_mode = str(mode or settings.sync_direction or SYNC_BOTH).strip().upper()
        if resolved_mode not in SYNC_DIRECTIONS:
            raise ValueError(f"mode must be one of {', '.join(SYNC_DIRECTIONS)}")

        summary = CalendarSyncSummary(mode=resolved_mode)
        try:
            if resolved_mode in {SYNC_EXPORT_ONLY, SYNC_BOTH}:
                try:
                    for task in self.tasks.list_for_owner(owner):
                        if not _should_export(task):
                            continue
                        try:
                            self._export(task, settings)
                            summary.exported += 1
                        except Exception as exc:
                            summary.export_failed += 1
                            logger.warning("exporting task %s for %s failed: %s", task.id, owner, exc)
                            self._log(owner, "EXPORT", "TASK", "ERROR", entity_id=task.id, message=str(exc))
                except Exception as exc:
                    summary.errors.append(f"export: {type(exc).__name__}: {exc}")
                    logger.exception("export phase failed for %s", owner)

            if resolved_mode in {SYNC_IMPORT_ONLY, SYNC_BOTH}:
                try:
                    summary.imported = self._import_window(settings, past_days, future_days)
                except Exception as exc:
                    summary.errors.append(f"import: {type(exc).__name__}: {exc}")
                    logger.exception("import phase failed for %s", owner)
        finally:
            self.settings.touch_last_sync(owner, self.clock().isoformat())
        return summary
