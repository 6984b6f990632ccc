from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


PRIORITIES = ("low", "normal", "medium", "high", "urgent")
STATUS_OPEN = "open"
STATUS_DOING = "doing"
STATUS_DONE = "done"

SYNC_EXPORT_ONLY = "EXPORT_ONLY"
SYNC_IMPORT_ONLY = "IMPORT_ONLY"
SYNC_BOTH = "BOTH"
SYNC_DIRECTIONS = (SYNC_EXPORT_ONLY, SYNC_IMPORT_ONLY, SYNC_BOTH)

RECURRENCE_WEEKLY = "WEEKLY"
RECURRENCE_DAILY = "DAILY"

KIND_TASKS = "tasks"
KIND_CHECKLIST = "task_checklist"
KIND_SETTINGS = "settings"
KIND_USERS = "users"
KIND_MIRROR = "tracker_mirror"
KIND_TRACKER_USERS = "tracker_users"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_civil_date(value: Any) -> date | None:
    """Parse a stored ``YYYY-MM-DD`` value; empty means unset."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def parse_civil_time(value: Any) -> time | None:
    if value is None:
        return None
    if isinstance(value, time):
        return value
    text = str(value).strip()
    if not text:
        return None
    hours, _, minutes = text.partition(":")
    return time(int(hours), int(minutes or 0))


def owner_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _as_list(value: Any) -> list[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class RetryPolicy:
    """Bounded retry for tracker requests.

    ``max_attempts`` counts every request, the first one included. Rate
    limiting backs off exponentially; server and network errors back off
    linearly. Each delay is capped at ``max_delay_seconds``.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 5))),
            base_delay_seconds=max(0.0, float(data.get("base_delay_seconds", 1.0))),
            max_delay_seconds=max(0.0, float(data.get("max_delay_seconds", 60.0))),
        )

    def delay_for(self, attempt: int, *, rate_limited: bool) -> float:
        attempt = max(1, int(attempt))
        if rate_limited:
            delay = self.base_delay_seconds * (2 ** (attempt - 1))
        else:
            delay = self.base_delay_seconds * attempt
        return min(delay, self.max_delay_seconds)


@dataclass
class TrackerConfig:
    base_url: str = "https://api.clickup.com/api/v2"
    api_token: str = ""
    view_id: str = ""
    include_closed: bool = True
    fallback_owner_key: str = "tracker-queue"
    max_pages: int = 100
    timeout_seconds: int = 30
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TrackerConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.clickup.com/api/v2")).strip().rstrip("/")
            or "https://api.clickup.com/api/v2",
            api_token=str(data.get("api_token", "")).strip(),
            view_id=str(data.get("view_id", "")).strip(),
            include_closed=_as_bool(data.get("include_closed", True)),
            fallback_owner_key=str(data.get("fallback_owner_key", "tracker-queue")).strip() or "tracker-queue",
            max_pages=max(1, int(data.get("max_pages", 100))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            retry=RetryPolicy.from_dict(data.get("retry")),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    timezone: str = "UTC"
    recurrence_horizon_days: int = 14
    import_past_days: int = 7
    import_future_days: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            recurrence_horizon_days=max(0, int(data.get("recurrence_horizon_days", 14))),
            import_past_days=max(0, int(data.get("import_past_days", 7))),
            import_future_days=max(0, int(data.get("import_future_days", 30))),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            tracker=TrackerConfig.from_dict(data.get("tracker")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Task:
    id: str
    user_key: str
    title: str = ""
    description: str = ""
    priority: str = "medium"
    due_date: str = ""
    due_time: str = ""
    status: str = STATUS_OPEN
    tags: list[str] = field(default_factory=list)
    calendar_event_id: str = ""
    calendar_updated_at: str = ""
    is_recurring: bool = False
    recurrence_type: str = ""
    recurrence_days: list[Any] = field(default_factory=list)
    recurrence_time: str = ""
    recurrence_start_date: str = ""
    recurrence_end_date: str = ""
    template_task_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Task":
        return cls(
            id=str(record.get("id", "")),
            user_key=str(record.get("user_key", "")),
            title=str(record.get("title", "") or ""),
            description=str(record.get("description", "") or ""),
            priority=str(record.get("priority", "") or "medium"),
            due_date=str(record.get("due_date", "") or ""),
            due_time=str(record.get("due_time", "") or ""),
            status=str(record.get("status", "") or STATUS_OPEN),
            tags=[str(tag) for tag in _as_list(record.get("tags"))],
            calendar_event_id=str(record.get("calendar_event_id", "") or ""),
            calendar_updated_at=str(record.get("calendar_updated_at", "") or ""),
            is_recurring=_as_bool(record.get("is_recurring", False)),
            recurrence_type=str(record.get("recurrence_type", "") or "").upper(),
            # Kept raw: the materializer validates weekday sets per template.
            recurrence_days=_as_list(record.get("recurrence_days")),
            recurrence_time=str(record.get("recurrence_time", "") or ""),
            recurrence_start_date=str(record.get("recurrence_start_date", "") or ""),
            recurrence_end_date=str(record.get("recurrence_end_date", "") or ""),
            template_task_id=str(record.get("template_task_id", "") or ""),
            created_at=str(record.get("created_at", "") or ""),
            updated_at=str(record.get("updated_at", "") or ""),
        )

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_template(self) -> bool:
        return self.is_recurring and not self.template_task_id

    @property
    def is_instance(self) -> bool:
        return bool(self.template_task_id)


@dataclass
class UserSyncSettings:
    user_key: str
    calendar_id: str = "primary"
    enable_sync: bool = False
    timezone: str = "UTC"
    default_event_duration_min: int = 60
    sync_direction: str = SYNC_BOTH
    allow_import_all: bool = False
    default_event_hour: str = "09:00"
    last_sync_at: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "UserSyncSettings":
        direction = str(record.get("sync_direction", SYNC_BOTH) or SYNC_BOTH).strip().upper()
        if direction not in SYNC_DIRECTIONS:
            direction = SYNC_BOTH
        return cls(
            user_key=str(record.get("user_key", "")),
            calendar_id=str(record.get("calendar_id", "") or "primary"),
            enable_sync=_as_bool(record.get("enable_sync", False)),
            timezone=str(record.get("timezone", "") or "UTC"),
            default_event_duration_min=max(1, int(record.get("default_event_duration_min", 60) or 60)),
            sync_direction=direction,
            allow_import_all=_as_bool(record.get("allow_import_all", False)),
            default_event_hour=str(record.get("default_event_hour", "") or "09:00"),
            last_sync_at=str(record.get("last_sync_at", "") or ""),
            created_at=str(record.get("created_at", "") or ""),
            updated_at=str(record.get("updated_at", "") or ""),
        )

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["id"] = self.user_key
        return record


@dataclass
class MirrorRecord:
    external_id: str
    name: str = ""
    url: str = ""
    status: str = ""
    priority: str = ""
    description: str = ""
    assignee_ids: list[str] = field(default_factory=list)
    assignee_usernames: list[str] = field(default_factory=list)
    assignee_emails: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    due_date: str = ""
    start_date: str = ""
    date_created: str = ""
    date_updated: str = ""
    date_closed: str = ""
    list_id: str = ""
    folder_id: str = ""
    space_id: str = ""
    out_of_view: bool = False
    last_sync_at: str = ""
    first_seen_at: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "MirrorRecord":
        return cls(
            external_id=str(record.get("external_id") or record.get("id") or ""),
            name=str(record.get("name", "") or ""),
            url=str(record.get("url", "") or ""),
            status=str(record.get("status", "") or ""),
            priority=str(record.get("priority", "") or ""),
            description=str(record.get("description", "") or ""),
            assignee_ids=[str(x) for x in _as_list(record.get("assignee_ids"))],
            assignee_usernames=[str(x) for x in _as_list(record.get("assignee_usernames"))],
            assignee_emails=[str(x) for x in _as_list(record.get("assignee_emails"))],
            tags=[str(x) for x in _as_list(record.get("tags"))],
            due_date=str(record.get("due_date", "") or ""),
            start_date=str(record.get("start_date", "") or ""),
            date_created=str(record.get("date_created", "") or ""),
            date_updated=str(record.get("date_updated", "") or ""),
            date_closed=str(record.get("date_closed", "") or ""),
            list_id=str(record.get("list_id", "") or ""),
            folder_id=str(record.get("folder_id", "") or ""),
            space_id=str(record.get("space_id", "") or ""),
            out_of_view=_as_bool(record.get("out_of_view", False)),
            last_sync_at=str(record.get("last_sync_at", "") or ""),
            first_seen_at=str(record.get("first_seen_at", "") or ""),
        )

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["id"] = self.external_id
        return record


@dataclass
class CalendarEvent:
    calendar_id: str
    uid: str = ""
    summary: str = ""
    description: str = ""
    start: datetime | date | None = None
    end: datetime | date | None = None
    all_day: bool = False
    href: str = ""
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end"):
            value = getattr(self, key)
            if isinstance(value, datetime):
                payload[key] = serialize_datetime(value)
            elif isinstance(value, date):
                payload[key] = value.isoformat()
        return payload

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        payload = dict(self.__dict__)
        payload.update(kwargs)
        return CalendarEvent(**payload)


@dataclass
class ReconcileSummary:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    out_of_view: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProjectionSummary:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def synced(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["synced"] = self.synced
        return payload


@dataclass
class MaterializeSummary:
    templates: int = 0
    generated: int = 0
    skipped_templates: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportSummary:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarSyncSummary:
    mode: str = SYNC_BOTH
    exported: int = 0
    export_failed: int = 0
    imported: ImportSummary | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "exported": self.exported,
            "export_failed": self.export_failed,
            "imported": self.imported.to_dict() if self.imported else None,
            "errors": list(self.errors),
        }


@dataclass
class RunSummary:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    out_of_view: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    generated: int = 0
    calendar_exported: int = 0
    calendar_imported: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    stage: str
    trigger: str
    summary: RunSummary = field(default_factory=RunSummary)
    stage_errors: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status in {"success", "partial", "skipped"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "ok": self.ok,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "stage": self.stage,
            "trigger": self.trigger,
            "summary": self.summary.to_dict(),
            "stage_errors": list(self.stage_errors),
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class OperationResult:
    ok: bool
    data: Any = None
    error: str = ""
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok, "meta": dict(self.meta)}
        if self.ok:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        return payload
