from __future__ import annotations

import os
from typing import Any, Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from routine_sync.caldav_client import CalDAVService
from routine_sync.config_manager import SECRET_MASK, ConfigManager, SecretStore
from routine_sync.errors import SyncRunFailedError
from routine_sync.models import OperationResult
from routine_sync.operations import safe_execute
from routine_sync.record_store import SQLiteRecordStore
from routine_sync.scheduler import SyncScheduler
from routine_sync.state_store import StateStore
from routine_sync.sync_engine import SyncOrchestrator
from routine_sync.task_service import TaskService


ERROR_STATUS_CODES = {
    "NotFoundError": 404,
    "ValidationGapError": 400,
    "MissingDueDateError": 400,
    "RecurrenceError": 400,
    "ValueError": 400,
    "SyncDisabledError": 409,
    "MissingCredentialError": 400,
    "UpstreamClientError": 502,
    "FetchFailedError": 502,
}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SettingsUpdateRequest(BaseModel):
    calendar_id: str | None = None
    enable_sync: bool | None = None
    timezone: str | None = None
    default_event_duration_min: int | None = Field(default=None, ge=1, le=24 * 60)
    sync_direction: str | None = None
    allow_import_all: bool | None = None
    default_event_hour: str | None = None


class TaskPayload(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    due_date: str | None = None
    due_time: str | None = None
    status: str | None = None
    tags: list[str] | None = None
    is_recurring: bool | None = None
    recurrence_type: str | None = None
    recurrence_days: list[int | str] | None = None
    recurrence_time: str | None = None
    recurrence_start_date: str | None = None
    recurrence_end_date: str | None = None


class ChecklistItemRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class ImportRequest(BaseModel):
    past_days: int | None = Field(default=None, ge=0, le=366)
    future_days: int | None = Field(default=None, ge=0, le=366)


class CalendarSyncRequest(ImportRequest):
    mode: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str, records_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.record_store = SQLiteRecordStore(records_path)
        self.secret_store = SecretStore()
        self.orchestrator = SyncOrchestrator(
            self.config_manager,
            self.state_store,
            self.record_store,
            secret_store=self.secret_store,
        )
        self.scheduler = SyncScheduler(self.orchestrator, self.config_manager)

    def task_service(self) -> TaskService:
        config = self.config_manager.load()
        return TaskService(
            self.record_store,
            tasks=self.orchestrator.task_repository(),
            settings=self.orchestrator.settings_repository(config),
            materializer=self.orchestrator.materializer(config),
            horizon_days=config.sync.recurrence_horizon_days,
        )


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets so they never overwrite stored ones."""
    sanitized = dict(payload)
    for section, key in (("caldav", "password"), ("tracker", "api_token")):
        block = sanitized.get(section)
        if not isinstance(block, dict):
            continue
        block = dict(block)
        value = block.get(key)
        if value is not None and str(value).strip() in {"", SECRET_MASK}:
            if str(current.get(section, {}).get(key, "")):
                block.pop(key, None)
            else:
                block[key] = ""
        if block:
            sanitized[section] = block
        else:
            sanitized.pop(section, None)
    return sanitized


def _respond(result: OperationResult) -> JSONResponse:
    status_code = 200
    if not result.ok:
        status_code = ERROR_STATUS_CODES.get(str(result.meta.get("error_type", "")), 500)
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _run(fn_name: str, handler: Callable[[], Any]) -> JSONResponse:
    return _respond(safe_execute(fn_name, handler))


def create_app() -> FastAPI:
    config_path = os.getenv("ROUTINE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ROUTINE_STATE_PATH", "data/state.db")
    records_path = os.getenv("ROUTINE_RECORDS_PATH", "data/records.db")
    context = AppContext(config_path=config_path, state_path=state_path, records_path=records_path)

    app = FastAPI(title="Routine Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def ctx() -> AppContext:
        return app.state.context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> JSONResponse:
        return _run("get_config", ctx().config_manager.masked)

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> JSONResponse:
        def handler() -> dict[str, Any]:
            manager = ctx().config_manager
            current = manager.load().to_dict()
            manager.update(_sanitize_config_payload(request.payload, current))
            return manager.masked()

        return _run("update_config", handler)

    @app.get("/api/calendars")
    def list_calendars() -> JSONResponse:
        def handler() -> list[dict[str, str]]:
            config = ctx().config_manager.load()
            return CalDAVService(ctx().secret_store.caldav_config(config.caldav)).list_calendars()

        return _run("list_calendars", handler)

    @app.post("/api/sync/run")
    def trigger_sync() -> JSONResponse:
        def handler() -> dict[str, Any]:
            result = ctx().orchestrator.run_once(trigger="manual")
            if not result.ok:
                raise SyncRunFailedError(result.message)
            return result.to_dict()

        return _run("run_sync", handler)

    @app.get("/api/sync/status")
    def sync_status() -> JSONResponse:
        def handler() -> dict[str, Any]:
            return {
                "last_run": ctx().orchestrator.last_status(),
                "scheduler_alive": ctx().scheduler.is_alive,
            }

        return _run("sync_status", handler)

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> JSONResponse:
        return _run("sync_runs", lambda: ctx().orchestrator.recent_runs(limit=limit))

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> JSONResponse:
        return _run("audit_events", lambda: ctx().state_store.recent_audit_events(limit=limit, run_id=run_id))

    @app.get("/api/external-tasks")
    def external_tasks(
        q: str = "",
        status: str = "",
        owner: str = "",
        include_out_of_view: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> JSONResponse:
        return _run(
            "list_external_tasks",
            lambda: ctx().orchestrator.list_external_tasks(
                query=q,
                status=status,
                owner=owner,
                include_out_of_view=include_out_of_view,
                page=page,
                page_size=page_size,
            ),
        )

    @app.get("/api/users/{owner}/settings")
    def get_settings(owner: str) -> JSONResponse:
        return _run("get_settings", lambda: ctx().orchestrator.settings_repository().get(owner))

    @app.put("/api/users/{owner}/settings")
    def put_settings(owner: str, request: SettingsUpdateRequest) -> JSONResponse:
        updates = request.model_dump(exclude_none=True)
        return _run("update_settings", lambda: ctx().orchestrator.settings_repository().update(owner, updates))

    @app.get("/api/users/{owner}/sync-log")
    def sync_log(owner: str, limit: int = 100) -> JSONResponse:
        return _run("sync_log", lambda: ctx().state_store.recent_sync_log(user_key=owner, limit=limit))

    @app.post("/api/users/{owner}/session")
    def start_session(owner: str) -> JSONResponse:
        return _run("start_session", lambda: ctx().task_service().start_session(owner))

    @app.post("/api/users/{owner}/tasks")
    def create_task(owner: str, request: TaskPayload) -> JSONResponse:
        payload = request.model_dump(exclude_none=True)
        return _run("create_task", lambda: ctx().task_service().create_task(owner, payload))

    @app.patch("/api/users/{owner}/tasks/{task_id}")
    def update_task(owner: str, task_id: str, request: TaskPayload) -> JSONResponse:
        payload = request.model_dump(exclude_none=True)
        return _run("update_task", lambda: ctx().task_service().update_task(owner, task_id, payload))

    @app.delete("/api/users/{owner}/tasks/{task_id}")
    def delete_task(owner: str, task_id: str) -> JSONResponse:
        return _run("delete_task", lambda: ctx().task_service().delete_task(owner, task_id))

    @app.post("/api/users/{owner}/tasks/{task_id}/checklist")
    def add_checklist_item(owner: str, task_id: str, request: ChecklistItemRequest) -> JSONResponse:
        return _run(
            "add_checklist_item",
            lambda: ctx().task_service().add_checklist_item(owner, task_id, request.text),
        )

    @app.post("/api/users/{owner}/tasks/{task_id}/calendar/export")
    def export_task(owner: str, task_id: str) -> JSONResponse:
        return _run("export_task", lambda: ctx().orchestrator.calendar_bridge().export_task(owner, task_id))

    @app.post("/api/users/{owner}/tasks/{task_id}/calendar/unlink")
    def unlink_task(owner: str, task_id: str) -> JSONResponse:
        return _run("unlink_task", lambda: ctx().orchestrator.calendar_bridge().unlink_task(owner, task_id))

    @app.post("/api/users/{owner}/calendar/import")
    def import_events(owner: str, request: ImportRequest | None = None) -> JSONResponse:
        request = request or ImportRequest()

        def handler() -> Any:
            config = ctx().config_manager.load()
            return ctx().orchestrator.calendar_bridge(config).import_events(
                owner,
                past_days=config.sync.import_past_days if request.past_days is None else request.past_days,
                future_days=config.sync.import_future_days if request.future_days is None else request.future_days,
            )

        return _run("import_events", handler)

    @app.post("/api/users/{owner}/calendar/sync")
    def sync_calendar(owner: str, request: CalendarSyncRequest | None = None) -> JSONResponse:
        request = request or CalendarSyncRequest()

        def handler() -> Any:
            config = ctx().config_manager.load()
            return ctx().orchestrator.calendar_bridge(config).sync_calendar(
                owner,
                mode=request.mode,
                past_days=config.sync.import_past_days if request.past_days is None else request.past_days,
                future_days=config.sync.import_future_days if request.future_days is None else request.future_days,
            )

        return _run("sync_calendar", handler)

    @app.post("/api/users/{owner}/recurrence/materialize")
    def materialize(owner: str) -> JSONResponse:
        def handler() -> Any:
            config = ctx().config_manager.load()
            return ctx().orchestrator.materializer(config).materialize(owner, config.sync.recurrence_horizon_days)

        return _run("materialize_recurrence", handler)

    return app
