from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from routine_sync.errors import DuplicateRecordError
from routine_sync.models import (
    KIND_MIRROR,
    KIND_TRACKER_USERS,
    STATUS_DOING,
    STATUS_DONE,
    STATUS_OPEN,
    MirrorRecord,
    ProjectionSummary,
    ReconcileSummary,
    Task,
    utc_now,
)
from routine_sync.record_store import RecordStore
from routine_sync.repository import TaskRepository
from routine_sync.task_block import parse_tracker_ref, upsert_tracker_ref

logger = logging.getLogger(__name__)

OWNED_TASK_FIELDS = ("title", "description", "priority", "due_date", "status")
TRACKER_PRIORITIES = {"urgent", "high", "low"}
MAX_PAGE_SIZE = 200


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _named(value: Any, key: str) -> str:
    if isinstance(value, dict):
        return _text(value.get(key))
    return _text(value)


def _epoch_ms_to_iso(value: Any, *, date_only: bool = False) -> str:
    """Tracker timestamps are epoch milliseconds, usually as strings."""
    text = _text(value)
    if not text:
        return ""
    if not text.lstrip("-").isdigit():
        return text[:10] if date_only else text
    moment = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    return moment.date().isoformat() if date_only else moment.isoformat()


def _unique(values: Iterable[str]) -> list[str]:
    output: list[str] = []
    for value in values:
        if value and value not in output:
            output.append(value)
    return output


def normalize_external_task(raw: dict[str, Any]) -> MirrorRecord:
    """Project one tracker task payload onto a mirror row."""
    assignees = [item for item in raw.get("assignees") or [] if isinstance(item, dict)]
    emails = [_text(item.get("email")) for item in assignees]
    flat_email = _text(raw.get("assignee_email"))
    if flat_email:
        emails.insert(0, flat_email)
    tags = [_named(tag, "name") for tag in raw.get("tags") or []]
    return MirrorRecord(
        external_id=_text(raw.get("id")),
        name=_text(raw.get("name")),
        url=_text(raw.get("url")),
        status=_named(raw.get("status"), "status"),
        priority=_named(raw.get("priority"), "priority"),
        description=_text(raw.get("text_content") or raw.get("description")),
        assignee_ids=_unique(_text(item.get("id")) for item in assignees),
        assignee_usernames=_unique(_text(item.get("username")) for item in assignees),
        assignee_emails=_unique(email.lower() for email in emails),
        tags=_unique(tags),
        due_date=_epoch_ms_to_iso(raw.get("due_date"), date_only=True),
        start_date=_epoch_ms_to_iso(raw.get("start_date"), date_only=True),
        date_created=_epoch_ms_to_iso(raw.get("date_created")),
        date_updated=_epoch_ms_to_iso(raw.get("date_updated")),
        date_closed=_epoch_ms_to_iso(raw.get("date_closed")),
        list_id=_named(raw.get("list"), "id"),
        folder_id=_named(raw.get("folder"), "id"),
        space_id=_named(raw.get("space"), "id"),
    )


def derive_status(external_status: str) -> str:
    text = (external_status or "").lower()
    if "complete" in text or "closed" in text:
        return STATUS_DONE
    if "progress" in text:
        return STATUS_DOING
    return STATUS_OPEN


def derive_priority(external_priority: str) -> str:
    text = (external_priority or "").strip().lower()
    return text if text in TRACKER_PRIORITIES else "normal"


class ReconciliationEngine:
    """Keeps the tracker mirror in step with the latest full fetch.

    Mirror rows are keyed by external id and are never deleted: rows missing
    from a fetch are flagged ``out_of_view``. In-view rows are then projected
    into internal tasks linked through a ``[Tracker Task]`` block in the task
    description.
    """

    def __init__(
        self,
        store: RecordStore,
        fallback_owner_key: str = "tracker-queue",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.tasks = TaskRepository(store)
        self.fallback_owner_key = fallback_owner_key
        self.clock = clock

    def mirror_rows(self) -> list[MirrorRecord]:
        return [MirrorRecord.from_record(record) for record in self.store.find(KIND_MIRROR)]

    def reconcile(self, fetched: list[dict[str, Any]]) -> ReconcileSummary:
        """Apply a complete fetch to the mirror. Never pass a partial page set."""
        now = self.clock().isoformat()
        summary = ReconcileSummary(fetched=len(fetched))
        snapshot = {row.external_id: row for row in self.mirror_rows()}
        seen: set[str] = set()

        for raw in fetched:
            if not isinstance(raw, dict):
                logger.warning("ignoring non-object tracker task: %r", raw)
                continue
            row = normalize_external_task(raw)
            if not row.external_id:
                logger.warning("ignoring tracker task without id: %s", row.name or "<unnamed>")
                continue
            row.out_of_view = False
            row.last_sync_at = now
            existing = snapshot.get(row.external_id)
            row.first_seen_at = (existing.first_seen_at if existing else "") or now
            inserted = self._upsert_mirror_row(row, known=existing is not None)
            snapshot.setdefault(row.external_id, row)
            if inserted:
                summary.inserted += 1
            elif row.external_id not in seen:
                summary.updated += 1
            seen.add(row.external_id)

        for external_id in snapshot:
            if external_id in seen:
                continue
            self.store.update(KIND_MIRROR, external_id, {"out_of_view": True, "last_sync_at": now})
            summary.out_of_view += 1

        logger.info(
            "reconciled %d tracker task(s): %d inserted, %d updated, %d out of view",
            summary.fetched,
            summary.inserted,
            summary.updated,
            summary.out_of_view,
        )
        return summary

    def _upsert_mirror_row(self, row: MirrorRecord, *, known: bool) -> bool:
        """Write one mirror row; returns True when it was inserted.

        Another run may insert the row after the snapshot was read, so a
        duplicate insert falls back to an update.
        """
        record = row.to_record()
        if known and self.store.update(KIND_MIRROR, row.external_id, record):
            return False
        try:
            self.store.create(KIND_MIRROR, record)
            return True
        except DuplicateRecordError:
            logger.debug("mirror row %s appeared concurrently; updating instead", row.external_id)
        # Keep the first_seen_at written by whoever inserted first.
        record.pop("first_seen_at", None)
        self.store.update(KIND_MIRROR, row.external_id, record)
        return False

    def username_map(self) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for record in self.store.find(KIND_TRACKER_USERS):
            username = _text(record.get("username")).casefold()
            email = _text(record.get("email")).lower()
            if not username or not email:
                continue
            if username in mapping and mapping[username] != email:
                # Known ambiguity: colliding usernames keep the first mapping.
                logger.warning(
                    "tracker username %s maps to both %s and %s; using %s",
                    username,
                    mapping[username],
                    email,
                    mapping[username],
                )
                continue
            mapping[username] = email
        return mapping

    def resolve_owner(self, row: MirrorRecord, usernames: dict[str, str] | None = None) -> str:
        for email in row.assignee_emails:
            if "@" in email:
                return email
        usernames = self.username_map() if usernames is None else usernames
        for username in row.assignee_usernames:
            email = usernames.get(username.casefold())
            if email:
                return email
        return self.fallback_owner_key

    def _linked_tasks(self) -> dict[str, Task]:
        linked: dict[str, Task] = {}
        for task in self.tasks.all_tasks():
            external_id = parse_tracker_ref(task.description)
            if not external_id:
                continue
            if external_id in linked:
                logger.warning(
                    "tracker task %s is linked from both %s and %s; keeping %s",
                    external_id,
                    linked[external_id].id,
                    task.id,
                    linked[external_id].id,
                )
                continue
            linked[external_id] = task
        return linked

    @staticmethod
    def _owned_fields(row: MirrorRecord) -> dict[str, Any]:
        return {
            "title": row.name or f"Tracker task {row.external_id}",
            "description": upsert_tracker_ref(row.description, row.external_id, row.url),
            "priority": derive_priority(row.priority),
            "due_date": row.due_date,
            "status": derive_status(row.status),
        }

    def project_into_internal_tasks(self, owner: str | None = None) -> ProjectionSummary:
        """Create or refresh one internal task per in-view mirror row.

        With ``owner`` set, only rows resolving to that owner, or whose linked
        task already belongs to them, are considered.
        """
        summary = ProjectionSummary()
        usernames = self.username_map()
        linked = self._linked_tasks()

        for row in self.mirror_rows():
            if row.out_of_view:
                summary.skipped += 1
                continue
            try:
                resolved = self.resolve_owner(row, usernames)
                existing = linked.get(row.external_id)
                if owner is not None and resolved != owner and (existing is None or existing.user_key != owner):
                    continue
                fields = self._owned_fields(row)

                if existing is None:
                    task = self.tasks.create(Task(id="", user_key=resolved, **fields))
                    linked[row.external_id] = task
                    summary.created += 1
                    continue

                changes = {key: value for key, value in fields.items() if getattr(existing, key) != value}
                if existing.user_key == self.fallback_owner_key and resolved != self.fallback_owner_key:
                    changes["user_key"] = resolved
                if not changes:
                    summary.unchanged += 1
                    continue
                self.tasks.update(existing.id, changes)
                summary.updated += 1
            except Exception:
                summary.errors += 1
                logger.exception("projecting tracker task %s failed", row.external_id)

        logger.info(
            "projected tracker mirror: %d created, %d updated, %d unchanged, %d skipped, %d errors",
            summary.created,
            summary.updated,
            summary.unchanged,
            summary.skipped,
            summary.errors,
        )
        return summary

    def list_mirror(
        self,
        query: str = "",
        status: str = "",
        owner: str = "",
        include_out_of_view: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
        page = max(1, int(page))
        needle = (query or "").strip().casefold()
        wanted_status = (status or "").strip().lower()
        wanted_owner = (owner or "").strip().lower()
        usernames = self.username_map()

        items: list[dict[str, Any]] = []
        for row in self.mirror_rows():
            if row.out_of_view and not include_out_of_view:
                continue
            bucket = derive_status(row.status)
            if wanted_status and wanted_status not in {bucket, row.status.lower()}:
                continue
            resolved = self.resolve_owner(row, usernames)
            if wanted_owner and resolved.lower() != wanted_owner:
                continue
            if needle:
                haystack = " ".join(
                    [row.external_id, row.name, row.description, *row.assignee_usernames, *row.assignee_emails]
                ).casefold()
                if needle not in haystack:
                    continue
            item = row.to_record()
            item["owner"] = resolved
            item["status_bucket"] = bucket
            items.append(item)

        total = len(items)
        start = (page - 1) * page_size
        return {
            "items": items[start : start + page_size],
            "total": total,
            "page": page,
            "page_size": page_size,
            "pages": max(1, math.ceil(total / page_size)),
        }
