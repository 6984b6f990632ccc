import tempfile
import unittest
from pathlib import Path

from routine_sync.models import KIND_MIRROR, KIND_SETTINGS, KIND_TRACKER_USERS, MirrorRecord
from routine_sync.reconciler import (
    ReconciliationEngine,
    derive_priority,
    derive_status,
    normalize_external_task,
)
from routine_sync.record_store import SQLiteRecordStore
from routine_sync.repository import SettingsRepository, TaskRepository
from routine_sync.task_block import parse_tracker_ref
from tests.fakes import FixedClock, InMemoryRecordStore


def _mirror(store: InMemoryRecordStore) -> dict[str, dict]:
    return {row["id"]: row for row in store.find(KIND_MIRROR)}


class NormalizeTests(unittest.TestCase):
    def test_clickup_shaped_payload(self) -> None:
        row = normalize_external_task(
            {
                "id": "abc",
                "name": "Ship it",
                "url": "https://app.clickup.com/t/abc",
                "status": {"status": "in progress", "type": "custom"},
                "priority": {"priority": "urgent", "color": "#f00"},
                "text_content": "Details",
                "assignees": [{"id": 7, "username": "Ana", "email": "Ana@X.com"}],
                "tags": [{"name": "ops"}],
                "due_date": "1772668800000",
                "date_updated": "1772668800000",
                "list": {"id": "L1"},
                "folder": {"id": "F1"},
                "space": {"id": "S1"},
            }
        )
        self.assertEqual(row.status, "in progress")
        self.assertEqual(row.priority, "urgent")
        self.assertEqual(row.assignee_ids, ["7"])
        self.assertEqual(row.assignee_emails, ["ana@x.com"])
        self.assertEqual(row.tags, ["ops"])
        self.assertEqual(row.due_date, "2026-03-05")
        self.assertTrue(row.date_updated.startswith("2026-03-05T"))
        self.assertEqual((row.list_id, row.folder_id, row.space_id), ("L1", "F1", "S1"))

    def test_flat_payload_and_missing_priority(self) -> None:
        row = normalize_external_task({"id": "T1", "status": "open", "priority": None, "assignee_email": "a@x.com"})
        self.assertEqual(row.priority, "")
        self.assertEqual(row.assignee_emails, ["a@x.com"])

    def test_status_and_priority_heuristics(self) -> None:
        self.assertEqual(derive_status("Complete"), "done")
        self.assertEqual(derive_status("closed"), "done")
        self.assertEqual(derive_status("In Progress"), "doing")
        self.assertEqual(derive_status("review"), "open")
        self.assertEqual(derive_priority("URGENT"), "urgent")
        self.assertEqual(derive_priority("normal"), "normal")
        self.assertEqual(derive_priority("critical"), "normal")


class ReconcileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRecordStore()
        self.engine = ReconciliationEngine(self.store, "tracker-queue", clock=FixedClock())

    def test_reconcile_is_idempotent(self) -> None:
        fetched = [{"id": "A", "name": "a"}, {"id": "B", "name": "b"}]

        first = self.engine.reconcile(fetched)
        snapshot = _mirror(self.store)
        second = self.engine.reconcile(fetched)

        self.assertEqual((first.inserted, first.updated), (2, 0))
        self.assertEqual((second.inserted, second.updated, second.out_of_view), (0, 2, 0))
        self.assertEqual(_mirror(self.store), snapshot)

    def test_missing_rows_are_flagged_not_deleted(self) -> None:
        self.engine.reconcile([{"id": "A"}, {"id": "B"}])

        summary = self.engine.reconcile([{"id": "A"}])

        rows = _mirror(self.store)
        self.assertEqual(set(rows), {"A", "B"})
        self.assertTrue(rows["B"]["out_of_view"])
        self.assertFalse(rows["A"]["out_of_view"])
        self.assertEqual(summary.out_of_view, 1)

        self.engine.reconcile([{"id": "A"}, {"id": "B"}])
        self.assertFalse(_mirror(self.store)["B"]["out_of_view"])

    def test_fields_are_replaced_not_merged(self) -> None:
        self.engine.reconcile([{"id": "A", "name": "a", "tags": [{"name": "x"}]}])
        first_seen = _mirror(self.store)["A"]["first_seen_at"]

        self.engine.reconcile([{"id": "A", "name": "renamed"}])

        row = _mirror(self.store)["A"]
        self.assertEqual(row["name"], "renamed")
        self.assertEqual(row["tags"], [])
        self.assertEqual(row["first_seen_at"], first_seen)

class _InterleavingStore(SQLiteRecordStore):
    """Runs ``hook`` right after the first mirror read returns its rows."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.hook = None

    def find(self, kind, filter=None):
        rows = super().find(kind, filter)
        if kind == KIND_MIRROR and self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return rows


class OverlappingRunTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = _InterleavingStore(str(Path(self.temp_dir.name) / "records.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_concurrent_insert_is_absorbed_as_update(self) -> None:
        fetched = [{"id": "T1", "name": "one"}, {"id": "T2", "name": "two"}]
        inner = ReconciliationEngine(self.store, "tracker-queue", clock=FixedClock())
        outer = ReconciliationEngine(self.store, "tracker-queue", clock=FixedClock())
        self.store.hook = lambda: inner.reconcile(fetched)

        summary = outer.reconcile(fetched)

        self.assertEqual((summary.inserted, summary.updated, summary.out_of_view), (0, 2, 0))
        rows = {row["id"]: row for row in self.store.find(KIND_MIRROR)}
        self.assertEqual(set(rows), {"T1", "T2"})
        self.assertFalse(any(row["out_of_view"] for row in rows.values()))

    def test_concurrent_settings_create_returns_stored_row(self) -> None:
        settings = SettingsRepository(self.store, "UTC")
        original_find = self.store.find
        state = {"raced": False}

        def racing_find(kind, filter=None):
            rows = original_find(kind, filter)
            if kind == KIND_SETTINGS and not state["raced"]:
                state["raced"] = True
                SettingsRepository(self.store, "UTC").update("a@x.com", {"enable_sync": True})
            return rows

        self.store.find = racing_find

        result = settings.get("a@x.com")

        self.assertTrue(result.enable_sync)
        self.assertEqual(len(original_find(KIND_SETTINGS)), 1)



class ProjectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRecordStore()
        self.engine = ReconciliationEngine(self.store, "tracker-queue", clock=FixedClock())
        self.tasks = TaskRepository(self.store)

    def test_end_to_end_single_task(self) -> None:
        fetched = [{"id": "T1", "name": "Fix login", "status": "in progress", "priority": "urgent", "assignee_email": "a@x.com"}]

        self.engine.reconcile(fetched)
        row = _mirror(self.store)["T1"]
        self.assertFalse(row["out_of_view"])
        projected = self.engine.project_into_internal_tasks()

        self.assertEqual(projected.created, 1)
        tasks = self.tasks.list_for_owner("a@x.com")
        self.assertEqual(len(tasks), 1)
        task = tasks[0]
        self.assertEqual(task.status, "doing")
        self.assertEqual(task.priority, "urgent")
        self.assertEqual(parse_tracker_ref(task.description), "T1")

        fetched[0]["status"] = "complete"
        self.engine.reconcile(fetched)
        second = self.engine.project_into_internal_tasks()

        self.assertEqual((second.created, second.updated), (0, 1))
        tasks = self.tasks.all_tasks()
        self.assertEqual(len(tasks), 1)
        self.assertEqual(tasks[0].id, task.id)
        self.assertEqual(tasks[0].status, "done")

    def test_unchanged_rows_are_not_rewritten(self) -> None:
        self.engine.reconcile([{"id": "T1", "name": "x"}])
        self.engine.project_into_internal_tasks()

        summary = self.engine.project_into_internal_tasks()

        self.assertEqual((summary.created, summary.updated, summary.unchanged), (0, 0, 1))

    def test_owner_reassignment_is_protected(self) -> None:
        self.engine.reconcile([{"id": "T1", "name": "Unassigned"}])
        self.engine.project_into_internal_tasks()
        task = self.tasks.list_for_owner("tracker-queue")[0]

        self.tasks.update(task.id, {"user_key": "b@x.com"})
        self.engine.reconcile([{"id": "T1", "name": "Unassigned, renamed"}])
        self.engine.project_into_internal_tasks()

        reloaded = self.tasks.get("b@x.com", task.id)
        assert reloaded is not None
        self.assertEqual(reloaded.title, "Unassigned, renamed")
        self.assertEqual(self.tasks.list_for_owner("tracker-queue"), [])

    def test_fallback_owner_moves_once_assignee_resolves(self) -> None:
        self.engine.reconcile([{"id": "T1", "assignees": [{"id": 1, "username": "ana"}]}])
        self.engine.project_into_internal_tasks()
        self.assertEqual(len(self.tasks.list_for_owner("tracker-queue")), 1)

        self.store.create(KIND_TRACKER_USERS, {"username": "Ana", "email": "ana@x.com"})
        self.engine.project_into_internal_tasks()

        self.assertEqual(len(self.tasks.list_for_owner("ana@x.com")), 1)
        self.assertEqual(self.tasks.list_for_owner("tracker-queue"), [])

    def test_out_of_view_rows_are_skipped(self) -> None:
        self.engine.reconcile([{"id": "A"}, {"id": "B"}])
        self.engine.reconcile([{"id": "A"}])

        summary = self.engine.project_into_internal_tasks()

        self.assertEqual(summary.created, 1)
        self.assertEqual(summary.skipped, 1)

    def test_owner_scope_limits_projection(self) -> None:
        self.engine.reconcile([{"id": "A", "assignee_email": "a@x.com"}, {"id": "B", "assignee_email": "b@x.com"}])

        summary = self.engine.project_into_internal_tasks(owner="a@x.com")

        self.assertEqual(summary.created, 1)
        self.assertEqual(self.tasks.list_for_owner("b@x.com"), [])

    def test_row_errors_are_counted(self) -> None:
        self.engine.reconcile([{"id": "A"}, {"id": "B"}])
        original = self.engine.tasks.create
        calls = {"n": 0}

        def flaky_create(task):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("store unavailable")
            return original(task)

        self.engine.tasks.create = flaky_create
        with self.assertLogs("routine_sync.reconciler", level="ERROR"):
            summary = self.engine.project_into_internal_tasks()

        self.assertEqual((summary.created, summary.errors), (1, 1))


class ListMirrorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRecordStore()
        self.engine = ReconciliationEngine(self.store, "tracker-queue", clock=FixedClock())
        self.engine.reconcile(
            [
                {"id": "A", "name": "Write docs", "status": "open", "assignee_email": "a@x.com"},
                {"id": "B", "name": "Fix bug", "status": "in progress", "assignee_email": "b@x.com"},
                {"id": "C", "name": "Old thing", "status": "closed"},
            ]
        )
        self.engine.reconcile(
            [
                {"id": "A", "name": "Write docs", "status": "open", "assignee_email": "a@x.com"},
                {"id": "B", "name": "Fix bug", "status": "in progress", "assignee_email": "b@x.com"},
            ]
        )

    def test_filters(self) -> None:
        self.assertEqual(self.engine.list_mirror()["total"], 2)
        self.assertEqual(self.engine.list_mirror(include_out_of_view=True)["total"], 3)
        self.assertEqual([i["id"] for i in self.engine.list_mirror(query="bug")["items"]], ["B"])
        self.assertEqual([i["id"] for i in self.engine.list_mirror(status="doing")["items"]], ["B"])
        self.assertEqual([i["id"] for i in self.engine.list_mirror(owner="a@x.com")["items"]], ["A"])

    def test_pagination_clamps_page_size(self) -> None:
        page = self.engine.list_mirror(page=2, page_size=1)
        self.assertEqual([i["id"] for i in page["items"]], ["B"])
        self.assertEqual(page["pages"], 2)
        self.assertEqual(self.engine.list_mirror(page_size=0)["page_size"], 1)
        self.assertEqual(self.engine.list_mirror(page_size=1000)["page_size"], 200)

    def test_items_carry_owner_and_bucket(self) -> None:
        item = self.engine.list_mirror(query="docs")["items"][0]
        self.assertEqual(item["owner"], "a@x.com")
        self.assertEqual(item["status_bucket"], "open")
        self.assertEqual(MirrorRecord.from_record(item).external_id, "A")


if __name__ == "__main__":
    unittest.main()
