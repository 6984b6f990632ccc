import tempfile
import unittest
from pathlib import Path

from routine_sync.errors import DuplicateRecordError
from routine_sync.record_store import SQLiteRecordStore
from routine_sync.state_store import StateStore


class SQLiteRecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteRecordStore(str(Path(self.temp_dir.name) / "records.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_create_find_update_delete(self) -> None:
        created = self.store.create("tasks", {"user_key": "a", "title": "One"})
        self.assertTrue(created["id"])
        self.store.create("tasks", {"id": "fixed", "user_key": "b", "title": "Two"})

        self.assertEqual([r["title"] for r in self.store.find("tasks")], ["One", "Two"])
        self.assertEqual(self.store.find("tasks", {"user_key": "b"})[0]["id"], "fixed")

        self.assertTrue(self.store.update("tasks", "fixed", {"title": "Renamed"}))
        self.assertFalse(self.store.update("tasks", "missing", {"title": "x"}))
        row = self.store.find("tasks", {"id": "fixed"})[0]
        self.assertEqual(row["title"], "Renamed")
        self.assertEqual(row["user_key"], "b")

        self.assertTrue(self.store.delete("tasks", "fixed"))
        self.assertFalse(self.store.delete("tasks", "fixed"))
        self.assertEqual(len(self.store.find("tasks")), 1)

    def test_kinds_are_isolated(self) -> None:
        self.store.create("tasks", {"id": "same"})
        self.store.create("settings", {"id": "same"})
        self.assertEqual(len(self.store.find("tasks")), 1)
        self.assertEqual(self.store.find("users"), [])

    def test_duplicate_id_raises_typed_error(self) -> None:
        self.store.create("tasks", {"id": "dup", "title": "first"})

        with self.assertRaises(DuplicateRecordError) as ctx:
            self.store.create("tasks", {"id": "dup", "title": "second"})

        self.assertEqual((ctx.exception.kind, ctx.exception.record_id), ("tasks", "dup"))
        self.assertEqual(self.store.find("tasks")[0]["title"], "first")


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_sync_run_lifecycle(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual")
        self.assertIsNone(self.store.last_finished_run())

        self.store.finish_sync_run(
            run_id=run_id,
            status="success",
            stage="DONE",
            message="ok",
            duration_ms=12,
            summary={"fetched": 3},
        )
        last = self.store.last_finished_run()
        assert last is not None
        self.assertEqual(last["id"], run_id)
        self.assertEqual(last["summary"], {"fetched": 3})
        self.assertEqual(self.store.recent_sync_runs(limit=5)[0]["stage"], "DONE")

    def test_sync_log_filters_by_owner(self) -> None:
        self.store.record_sync_log(user_key="a", direction="EXPORT", entity_type="TASK", status="SUCCESS")
        self.store.record_sync_log(user_key="b", direction="IMPORT", entity_type="TASK", status="ERROR", message="x")
        rows = self.store.recent_sync_log(user_key="b")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["direction"], "IMPORT")
        self.assertEqual(len(self.store.recent_sync_log()), 2)

    def test_audit_events_by_run(self) -> None:
        self.store.record_audit_event(action="run_error", details={"error": "boom"}, run_id=7)
        self.store.record_audit_event(action="other", details={})
        events = self.store.recent_audit_events(run_id=7)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["details"]["error"], "boom")


if __name__ == "__main__":
    unittest.main()
