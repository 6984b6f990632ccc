from __future__ import annotations

import logging
import traceback
from datetime import datetime
from typing import Any, Callable

from routine_sync.caldav_client import CalDAVService
from routine_sync.calendar_bridge import CalendarBridge, CalendarService
from routine_sync.config_manager import ConfigManager, SecretStore
from routine_sync.models import (
    AppConfig,
    CalDAVConfig,
    RunSummary,
    SyncResult,
    TrackerConfig,
    utc_now,
)
from routine_sync.reconciler import ReconciliationEngine
from routine_sync.record_store import RecordStore
from routine_sync.recurrence import RecurrenceMaterializer
from routine_sync.repository import SettingsRepository, TaskRepository
from routine_sync.state_store import StateStore
from routine_sync.tracker_client import TrackerClient

logger = logging.getLogger(__name__)

STAGE_FETCHING = "FETCHING"
STAGE_RECONCILING = "RECONCILING"
STAGE_PROJECTING = "PROJECTING"
STAGE_MATERIALIZING = "MATERIALIZING"
STAGE_CALENDAR = "CALENDAR"
STAGE_DONE = "DONE"
STAGE_FAILED = "FAILED"

SUCCESS_STATUSES = {"success", "partial", "skipped"}


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class SyncOrchestrator:
    """Runs one sync pass: tracker mirror, projection, recurrence, calendar.

    A failure while fetching or reconciling fails the run. Later stages
    record their errors and the run finishes as ``partial``; nothing done by
    an earlier stage is rolled back.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        record_store: RecordStore,
        *,
        secret_store: SecretStore | None = None,
        tracker_client_factory: Callable[[TrackerConfig], TrackerClient] | None = None,
        calendar_factory: Callable[[CalDAVConfig], CalendarService] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.record_store = record_store
        self.secret_store = secret_store or SecretStore()
        self.tracker_client_factory = tracker_client_factory or TrackerClient
        self.calendar_factory = calendar_factory or CalDAVService
        self.clock = clock

    def load_config(self) -> AppConfig:
        return self.config_manager.load()

    def task_repository(self) -> TaskRepository:
        return TaskRepository(self.record_store)

    def settings_repository(self, config: AppConfig | None = None) -> SettingsRepository:
        config = config or self.load_config()
        return SettingsRepository(self.record_store, config.sync.timezone)

    def reconciliation_engine(self, config: AppConfig | None = None) -> ReconciliationEngine:
        config = config or self.load_config()
        return ReconciliationEngine(self.record_store, config.tracker.fallback_owner_key, self.clock)

    def materializer(self, config: AppConfig | None = None) -> RecurrenceMaterializer:
        return RecurrenceMaterializer(self.task_repository(), self.settings_repository(config), self.clock)

    def calendar_bridge(self, config: AppConfig | None = None) -> CalendarBridge:
        config = config or self.load_config()
        caldav_config = self.secret_store.caldav_config(config.caldav)
        return CalendarBridge(
            tasks=self.task_repository(),
            settings=self.settings_repository(config),
            calendar=self.calendar_factory(caldav_config),
            state_store=self.state_store,
            clock=self.clock,
        )

    def _record_stage_error(
        self,
        *,
        run_id: int,
        trigger: str,
        stage: str,
        exc: BaseException,
        stage_errors: list[str],
        owner: str = "",
    ) -> None:
        label = f"{stage}[{owner}]" if owner else stage
        stage_errors.append(f"{label}: {_error_text(exc)}")
        logger.exception("sync stage %s failed", label)
        self.state_store.record_audit_event(
            run_id=run_id,
            action="stage_error",
            details={
                "trigger": trigger,
                "stage": stage,
                "owner": owner,
                "error": _error_text(exc),
                "traceback": traceback.format_exc(limit=5),
            },
        )

    def _sync_tracker(
        self,
        config: AppConfig,
        summary: RunSummary,
        *,
        run_id: int,
        trigger: str,
        stage_errors: list[str],
        set_stage: Callable[[str], None],
    ) -> None:
        tracker_config = self.secret_store.tracker_config(config.tracker)
        if not tracker_config.view_id:
            logger.info("no tracker view configured; skipping tracker stages")
            return

        set_stage(STAGE_FETCHING)
        client = self.tracker_client_factory(tracker_config)
        fetched = client.fetch_all(tracker_config.view_id, tracker_config.include_closed)
        summary.fetched = len(fetched)

        set_stage(STAGE_RECONCILING)
        engine = ReconciliationEngine(self.record_store, tracker_config.fallback_owner_key, self.clock)
        reconciled = engine.reconcile(fetched)
        summary.inserted = reconciled.inserted
        summary.updated = reconciled.updated
        summary.out_of_view = reconciled.out_of_view

        set_stage(STAGE_PROJECTING)
        try:
            projected = engine.project_into_internal_tasks()
        except Exception as exc:
            self._record_stage_error(
                run_id=run_id, trigger=trigger, stage=STAGE_PROJECTING, exc=exc, stage_errors=stage_errors
            )
            return
        summary.synced = projected.synced
        summary.skipped += projected.skipped
        summary.errors += projected.errors

    def _materialize_all(
        self,
        config: AppConfig,
        summary: RunSummary,
        *,
        run_id: int,
        trigger: str,
        stage_errors: list[str],
    ) -> None:
        tasks = self.task_repository()
        settings = self.settings_repository(config)
        materializer = RecurrenceMaterializer(tasks, settings, self.clock)
        owners = [item.user_key for item in settings.all()]
        for owner in tasks.owners_with_templates():
            if owner not in owners:
                owners.append(owner)
        for owner in owners:
            try:
                result = materializer.materialize(owner, config.sync.recurrence_horizon_days)
            except Exception as exc:
                self._record_stage_error(
                    run_id=run_id,
                    trigger=trigger,
                    stage=STAGE_MATERIALIZING,
                    exc=exc,
                    stage_errors=stage_errors,
                    owner=owner,
                )
                continue
            summary.generated += result.generated
            summary.errors += result.skipped_templates

    def _sync_calendars(
        self,
        config: AppConfig,
        summary: RunSummary,
        *,
        run_id: int,
        trigger: str,
        stage_errors: list[str],
    ) -> None:
        enabled = [item for item in self.settings_repository(config).all() if item.enable_sync]
        if not enabled:
            return
        if not config.caldav.is_configured():
            logger.info("CalDAV is not configured; skipping calendar sync for %d owner(s)", len(enabled))
            return

        bridge = self.calendar_bridge(config)
        for item in enabled:
            try:
                result = bridge.sync_calendar(
                    item.user_key,
                    past_days=config.sync.import_past_days,
                    future_days=config.sync.import_future_days,
                )
            except Exception as exc:
                self._record_stage_error(
                    run_id=run_id,
                    trigger=trigger,
                    stage=STAGE_CALENDAR,
                    exc=exc,
                    stage_errors=stage_errors,
                    owner=item.user_key,
                )
                continue
            summary.calendar_exported += result.exported
            summary.errors += result.export_failed
            if result.imported is not None:
                summary.calendar_imported += result.imported.imported + result.imported.updated
                summary.errors += result.imported.errors
            stage_errors.extend(f"{STAGE_CALENDAR}[{item.user_key}]: {error}" for error in result.errors)

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = self.clock()
        summary = RunSummary()
        stage_errors: list[str] = []
        stage = STAGE_FETCHING

        def set_stage(value: str) -> None:
            nonlocal stage
            stage = value
            logger.debug("sync run %s entering %s", run_id, value)

        run_id = self.state_store.start_sync_run(trigger=trigger, stage=stage)
        try:
            config = self.load_config()
            self._sync_tracker(
                config,
                summary,
                run_id=run_id,
                trigger=trigger,
                stage_errors=stage_errors,
                set_stage=set_stage,
            )

            set_stage(STAGE_MATERIALIZING)
            self._materialize_all(config, summary, run_id=run_id, trigger=trigger, stage_errors=stage_errors)

            set_stage(STAGE_CALENDAR)
            self._sync_calendars(config, summary, run_id=run_id, trigger=trigger, stage_errors=stage_errors)

            set_stage(STAGE_DONE)
            status = "partial" if stage_errors else "success"
            message = (
                f"Fetched {summary.fetched}, synced {summary.synced}, generated {summary.generated}, "
                f"calendar {summary.calendar_exported} out / {summary.calendar_imported} in."
            )
            if stage_errors:
                message += f" {len(stage_errors)} stage error(s)."
            duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                stage=STAGE_DONE,
                message=message,
                duration_ms=duration_ms,
                summary={**summary.to_dict(), "stage_errors": stage_errors},
            )
            logger.info("sync run %s (%s) finished: %s", run_id, trigger, message)
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                stage=STAGE_DONE,
                trigger=trigger,
                summary=summary,
                stage_errors=stage_errors,
                run_at=started_at,
            )
        except Exception as exc:
            failed_stage = stage
            duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
            error_message = f"{failed_stage}: {_error_text(exc)}"
            logger.exception("sync run %s (%s) failed during %s", run_id, trigger, failed_stage)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                stage=STAGE_FAILED,
                message=error_message,
                duration_ms=duration_ms,
                summary={**summary.to_dict(), "stage_errors": stage_errors, "failed_stage": failed_stage},
            )
            self.state_store.record_audit_event(
                run_id=run_id,
                action="run_error",
                details={
                    "trigger": trigger,
                    "stage": failed_stage,
                    "error": _error_text(exc),
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                stage=STAGE_FAILED,
                trigger=trigger,
                summary=summary,
                stage_errors=stage_errors,
                run_at=started_at,
            )

    def last_status(self) -> dict[str, Any] | None:
        run = self.state_store.last_finished_run()
        if run is None:
            return None
        return {
            "run_id": run["id"],
            "run_at": run["run_at"],
            "trigger": run["trigger"],
            "ok": run["status"] in SUCCESS_STATUSES,
            "status": run["status"],
            "stage": run["stage"],
            "message": run["message"],
            "duration_ms": run["duration_ms"],
            "summary": run["summary"],
        }

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.state_store.recent_sync_runs(limit=limit)

    def list_external_tasks(
        self,
        query: str = "",
        status: str = "",
        owner: str = "",
        include_out_of_view: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        return self.reconciliation_engine().list_mirror(
            query=query,
            status=status,
            owner=owner,
            include_out_of_view=include_out_of_view,
            page=page,
            page_size=page_size,
        )
