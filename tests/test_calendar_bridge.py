import unittest
from datetime import date, datetime, timezone
from unittest import mock

from routine_sync.calendar_bridge import CalendarBridge
from routine_sync.errors import MissingDueDateError, NotFoundError, SyncDisabledError, ValidationGapError
from routine_sync.models import CalendarEvent, Task
from routine_sync.repository import SettingsRepository, TaskRepository
from routine_sync.task_block import CALENDAR_MARKER
from tests.fakes import FakeCalendarService, FixedClock, InMemoryRecordStore

OWNER = "a@x.com"


class CalendarBridgeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRecordStore()
        self.tasks = TaskRepository(self.store)
        self.settings = SettingsRepository(self.store, "UTC")
        self.calendar = FakeCalendarService()
        self.state_store = mock.Mock()
        self.bridge = CalendarBridge(
            tasks=self.tasks,
            settings=self.settings,
            calendar=self.calendar,
            state_store=self.state_store,
            clock=FixedClock(),
        )
        self.settings.update(OWNER, {"enable_sync": True, "timezone": "Europe/Lisbon"})

    def _task(self, **fields) -> Task:
        record = {"id": "", "user_key": OWNER, "title": "Dentist", "due_date": "2026-03-05"}
        record.update(fields)
        return self.tasks.create(Task.from_record(record))

    def _reload(self, task_id: str) -> Task:
        task = self.tasks.get(OWNER, task_id)
        assert task is not None
        return task

    def test_export_requires_enabled_sync(self) -> None:
        self.settings.update(OWNER, {"enable_sync": False})
        task = self._task()
        with self.assertRaises(SyncDisabledError):
            self.bridge.export_task(OWNER, task.id)

    def test_export_creates_all_day_event_and_links(self) -> None:
        task = self._task(description="Bring card", priority="high")

        result = self.bridge.export_task(OWNER, task.id)

        self.assertTrue(result["created"])
        event = self.calendar.events[result["event_id"]]
        self.assertTrue(event.all_day)
        self.assertEqual(event.start, date(2026, 3, 5))
        self.assertEqual(event.summary, "[Task] Dentist")
        self.assertIn(f"ID: {task.id}", event.description)
        self.assertIn(CALENDAR_MARKER, event.description)
        self.assertEqual(self._reload(task.id).calendar_event_id, result["event_id"])
        self.assertEqual(self.state_store.record_sync_log.call_args.kwargs["status"], "SUCCESS")

    def test_export_timed_event_uses_owner_timezone_and_duration(self) -> None:
        self.settings.update(OWNER, {"default_event_duration_min": 45})
        task = self._task(due_date="2026-07-01", due_time="09:00")

        result = self.bridge.export_task(OWNER, task.id)

        event = self.calendar.events[result["event_id"]]
        self.assertFalse(event.all_day)
        # Lisbon is UTC+1 in July.
        self.assertEqual(event.start.astimezone(timezone.utc), datetime(2026, 7, 1, 8, 0, tzinfo=timezone.utc))
        self.assertEqual((event.end - event.start).total_seconds(), 45 * 60)

    def test_export_updates_linked_event_in_place(self) -> None:
        task = self._task()
        first = self.bridge.export_task(OWNER, task.id)
        self.tasks.update(task.id, {"title": "Dentist (moved)"})

        second = self.bridge.export_task(OWNER, task.id)

        self.assertFalse(second["created"])
        self.assertEqual(second["event_id"], first["event_id"])
        self.assertEqual(len(self.calendar.created), 1)
        self.assertEqual(self.calendar.events[first["event_id"]].summary, "[Task] Dentist (moved)")

    def test_export_relinks_when_event_was_deleted(self) -> None:
        task = self._task()
        first = self.bridge.export_task(OWNER, task.id)
        del self.calendar.events[first["event_id"]]

        second = self.bridge.export_task(OWNER, task.id)

        self.assertTrue(second["created"])
        self.assertTrue(second["relinked"])
        self.assertNotEqual(second["event_id"], first["event_id"])
        self.assertEqual(self._reload(task.id).calendar_event_id, second["event_id"])

    def test_export_relinks_when_update_reports_missing(self) -> None:
        task = self._task()
        first = self.bridge.export_task(OWNER, task.id)
        self.calendar.fail_uids.add(first["event_id"])

        second = self.bridge.export_task(OWNER, task.id)

        self.assertTrue(second["relinked"])
        self.assertEqual(len(self.calendar.created), 2)

    def test_export_without_due_date_fails(self) -> None:
        task = self._task(due_date="")
        with self.assertRaises(MissingDueDateError):
            self.bridge.export_task(OWNER, task.id)
        self.assertEqual(self.state_store.record_sync_log.call_args.kwargs["status"], "ERROR")

    def test_export_refuses_templates_and_unknown_tasks(self) -> None:
        template = self._task(is_recurring=True, recurrence_days=[1])
        with self.assertRaises(ValidationGapError):
            self.bridge.export_task(OWNER, template.id)
        with self.assertRaises(NotFoundError):
            self.bridge.export_task(OWNER, "missing")

    def test_unlink_is_idempotent_and_keeps_event(self) -> None:
        task = self._task()
        exported = self.bridge.export_task(OWNER, task.id)

        self.assertTrue(self.bridge.unlink_task(OWNER, task.id)["unlinked"])
        self.assertFalse(self.bridge.unlink_task(OWNER, task.id)["unlinked"])
        self.assertEqual(self._reload(task.id).calendar_event_id, "")
        self.assertIn(exported["event_id"], self.calendar.events)

    def test_import_updates_linked_and_creates_new(self) -> None:
        task = self._task(calendar_event_id="evt-linked")
        self.calendar.add(
            CalendarEvent(
                calendar_id="primary",
                uid="evt-linked",
                summary="[Task] Dentist at 10",
                description=f"ID: {task.id}\nPriority: normal\n\nNew notes\n\n{CALENDAR_MARKER}",
                start=date(2026, 3, 6),
                end=date(2026, 3, 7),
                all_day=True,
            )
        )
        self.calendar.add(
            CalendarEvent(
                calendar_id="primary",
                uid="evt-new",
                summary="Planning",
                description=CALENDAR_MARKER,
                start=datetime(2026, 3, 3, 15, 30, tzinfo=timezone.utc),
                end=datetime(2026, 3, 3, 16, 30, tzinfo=timezone.utc),
            )
        )
        self.calendar.add(CalendarEvent(calendar_id="primary", uid="evt-foreign", summary="Lunch", start=date(2026, 3, 3)))

        summary = self.bridge.import_events(OWNER, 7, 30)

        self.assertEqual((summary.imported, summary.updated, summary.skipped, summary.errors), (1, 1, 1, 0))
        self.assertEqual(summary.total, 3)
        updated = self._reload(task.id)
        self.assertEqual(updated.title, "Dentist at 10")
        self.assertEqual(updated.description, "New notes")
        self.assertEqual(updated.due_date, "2026-03-06")
        created = self.tasks.find_by_event(OWNER, "evt-new")[0]
        self.assertEqual(created.title, "Planning")
        self.assertEqual(created.due_date, "2026-03-03")
        self.assertEqual(created.due_time, "15:30")
        self.assertEqual(created.priority, "normal")

    def test_import_all_takes_untagged_events(self) -> None:
        self.settings.update(OWNER, {"allow_import_all": True})
        self.calendar.add(CalendarEvent(calendar_id="primary", uid="evt-foreign", summary="Lunch", start=date(2026, 3, 3)))

        summary = self.bridge.import_events(OWNER)

        self.assertEqual(summary.imported, 1)

    def test_import_counts_per_event_errors(self) -> None:
        self.calendar.add(CalendarEvent(calendar_id="primary", uid="evt-broken", description=CALENDAR_MARKER))
        self.calendar.add(
            CalendarEvent(calendar_id="primary", uid="evt-ok", summary="Ok", description=CALENDAR_MARKER, start=date(2026, 3, 4))
        )

        summary = self.bridge.import_events(OWNER)

        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.imported, 1)

    def test_sync_calendar_exports_open_and_linked_tasks_only(self) -> None:
        open_task = self._task(title="Open")
        self._task(title="Done", status="done")
        self._task(title="No date", due_date="")
        self._task(title="Template", is_recurring=True, recurrence_days=[1])

        summary = self.bridge.sync_calendar(OWNER, mode="EXPORT_ONLY")

        self.assertEqual(summary.exported, 1)
        self.assertIsNone(summary.imported)
        self.assertTrue(self._reload(open_task.id).calendar_event_id)
        self.assertTrue(self.settings.get(OWNER).last_sync_at)

    def test_sync_calendar_records_phase_failure_and_stamps_last_sync(self) -> None:
        self.calendar.list_events = mock.Mock(side_effect=RuntimeError("server down"))

        summary = self.bridge.sync_calendar(OWNER, mode="IMPORT_ONLY")

        self.assertEqual(len(summary.errors), 1)
        self.assertIn("server down", summary.errors[0])
        self.assertEqual(self.settings.get(OWNER).last_sync_at, FixedClock().now.isoformat())


if __name__ == "__main__":
    unittest.main()
