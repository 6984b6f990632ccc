import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock
from zoneinfo import ZoneInfo

from caldav.lib import error as caldav_error

from routine_sync.caldav_client import CalDAVService
from routine_sync.errors import NotFoundError
from routine_sync.models import CalDAVConfig, CalendarEvent


class CalDAVServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = CalDAVService(CalDAVConfig(base_url="https://dav.example.com", username="u", password="p"))
        self.calendar = mock.Mock()
        self.calendar.url = "https://dav.example.com/cal/home/"
        self.calendar.name = "Home"
        patcher = mock.patch("routine_sync.caldav_client.caldav.DAVClient")
        self.dav_client = patcher.start()
        self.addCleanup(patcher.stop)
        self.dav_client.return_value.principal.return_value.calendars.return_value = [self.calendar]

    def _roundtrip(self, event: CalendarEvent) -> CalendarEvent:
        resource = mock.Mock(data=self.service._build_ical(event), url="https://dav.example.com/cal/home/e.ics")
        return self.service._parse_resource("primary", resource)

    def test_all_day_event_roundtrip(self) -> None:
        parsed = self._roundtrip(
            CalendarEvent(calendar_id="primary", uid="u1", summary="[Task] A", start=date(2026, 3, 5), all_day=True)
        )
        self.assertTrue(parsed.all_day)
        self.assertEqual(parsed.start, date(2026, 3, 5))
        self.assertEqual(parsed.end, date(2026, 3, 6))
        self.assertEqual(parsed.uid, "u1")
        self.assertTrue(parsed.etag)

    def test_timed_event_is_stored_in_utc(self) -> None:
        start = datetime(2026, 7, 1, 9, 0, tzinfo=ZoneInfo("Europe/Lisbon"))
        parsed = self._roundtrip(
            CalendarEvent(calendar_id="primary", uid="u2", start=start, end=start + timedelta(minutes=30))
        )
        self.assertFalse(parsed.all_day)
        self.assertEqual(parsed.start, datetime(2026, 7, 1, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(parsed.end - parsed.start, timedelta(minutes=30))

    def test_primary_alias_and_unknown_calendar(self) -> None:
        self.assertIs(self.service._get_calendar("primary"), self.calendar)
        self.assertEqual(
            self.service.list_calendars(),
            [{"calendar_id": "https://dav.example.com/cal/home", "name": "Home"}],
        )
        with self.assertRaises(NotFoundError):
            self.service._get_calendar("https://dav.example.com/cal/other")

    def test_create_assigns_uid(self) -> None:
        def save_event(ical: str) -> mock.Mock:
            return mock.Mock(data=ical, url="https://dav.example.com/cal/home/new.ics")

        self.calendar.save_event.side_effect = save_event

        saved = self.service.create_event("primary", CalendarEvent(calendar_id="primary", start=date(2026, 3, 5), all_day=True))

        self.assertTrue(saved.uid)
        self.assertEqual(saved.href, "https://dav.example.com/cal/home/new.ics")

    def test_get_and_update_missing_event(self) -> None:
        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError()
        event = CalendarEvent(calendar_id="primary", uid="gone", start=date(2026, 3, 5), all_day=True)

        self.assertIsNone(self.service.get_event("primary", "gone"))
        with self.assertRaises(NotFoundError):
            self.service.update_event("primary", event)

    def test_incomplete_config_refuses_to_connect(self) -> None:
        service = CalDAVService(CalDAVConfig())
        with self.assertRaises(RuntimeError):
            service.list_calendars()


if __name__ == "__main__":
    unittest.main()
