from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterator

from routine_sync.errors import RecurrenceError
from routine_sync.models import (
    RECURRENCE_DAILY,
    RECURRENCE_WEEKLY,
    STATUS_OPEN,
    MaterializeSummary,
    Task,
    owner_zone,
    parse_civil_date,
    utc_now,
)
from routine_sync.repository import SettingsRepository, TaskRepository

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = {
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
    "sun": 7,
}


def _parse_weekday(value: Any) -> int:
    if isinstance(value, bool):
        raise RecurrenceError(f"invalid weekday: {value!r}")
    if isinstance(value, int):
        day = value
    else:
        text = str(value).strip().lower()
        if text[:3] in WEEKDAY_NAMES and not text.isdigit():
            return WEEKDAY_NAMES[text[:3]]
        try:
            day = int(text)
        except ValueError as exc:
            raise RecurrenceError(f"invalid weekday: {value!r}") from exc
    if not 1 <= day <= 7:
        raise RecurrenceError(f"weekday out of range (1=Mon..7=Sun): {day}")
    return day


def weekday_set(template: Task) -> set[int]:
    """ISO weekdays a template recurs on."""
    recurrence_type = template.recurrence_type or RECURRENCE_WEEKLY
    if recurrence_type == RECURRENCE_DAILY:
        return set(range(1, 8))
    if recurrence_type != RECURRENCE_WEEKLY:
        raise RecurrenceError(f"unsupported recurrence type: {recurrence_type}")

    raw_days: list[Any] = list(template.recurrence_days)
    # Older rows hold the weekday list as a JSON string.
    if len(raw_days) == 1 and isinstance(raw_days[0], str) and raw_days[0].strip().startswith("["):
        try:
            decoded = json.loads(raw_days[0])
        except ValueError as exc:
            raise RecurrenceError(f"malformed weekday set: {raw_days[0]!r}") from exc
        if not isinstance(decoded, list):
            raise RecurrenceError(f"malformed weekday set: {raw_days[0]!r}")
        raw_days = decoded
    days = {_parse_weekday(item) for item in raw_days}
    if not days:
        raise RecurrenceError("empty weekday set")
    return days


def occurrence_dates(template: Task, today: date, horizon_days: int) -> Iterator[date]:
    days = weekday_set(template)
    try:
        start = parse_civil_date(template.recurrence_start_date)
        end = parse_civil_date(template.recurrence_end_date)
    except ValueError as exc:
        raise RecurrenceError(f"unparsable recurrence window: {exc}") from exc

    first = max(today, start) if start else today
    last = today + timedelta(days=max(0, horizon_days))
    if end is not None and end < last:
        last = end
    current = first
    while current <= last:
        if current.isoweekday() in days:
            yield current
        current += timedelta(days=1)


class RecurrenceMaterializer:
    """Expands recurring templates into dated instances, additively."""

    def __init__(
        self,
        tasks: TaskRepository,
        settings: SettingsRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.settings = settings
        self.clock = clock

    def _today(self, owner: str) -> date:
        zone = owner_zone(self.settings.get(owner).timezone)
        return self.clock().astimezone(zone).date()

    def materialize(self, owner: str, horizon_days: int) -> MaterializeSummary:
        summary = MaterializeSummary()
        today = self._today(owner)
        owned = self.tasks.list_for_owner(owner)
        existing = {(task.template_task_id, task.due_date) for task in owned if task.template_task_id}

        for template in owned:
            if not template.is_template:
                continue
            summary.templates += 1
            try:
                for day in occurrence_dates(template, today, horizon_days):
                    key = (template.id, day.isoformat())
                    if key in existing:
                        continue
                    self.tasks.create(self._instance_for(template, day))
                    existing.add(key)
                    summary.generated += 1
            except RecurrenceError as exc:
                summary.skipped_templates += 1
                logger.warning("skipping recurring template %s (owner=%s): %s", template.id, owner, exc)
            except Exception:
                summary.skipped_templates += 1
                logger.exception("materializing template %s failed (owner=%s)", template.id, owner)

        if summary.generated:
            logger.info(
                "materialized %d instance(s) from %d template(s) for %s",
                summary.generated,
                summary.templates,
                owner,
            )
        return summary

    @staticmethod
    def _instance_for(template: Task, day: date) -> Task:
        return Task(
            id="",
            user_key=template.user_key,
            title=template.title,
            description=template.description,
            priority=template.priority,
            due_date=day.isoformat(),
            due_time=template.recurrence_time,
            status=STATUS_OPEN,
            tags=list(template.tags),
            template_task_id=template.id,
        )
