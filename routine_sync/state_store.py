from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_json(raw: str | None) -> Any:
    try:
        return json.loads(raw or "{}")
    except ValueError:
        return {}


class StateStore:
    """Engine bookkeeping: sync runs, per-item sync log and audit events."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            stage TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            summary_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            user_key TEXT NOT NULL,
            direction TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT,
            calendar_event_id TEXT,
            status TEXT NOT NULL,
            message TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def start_sync_run(self, *, trigger: str, stage: str = "FETCHING") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, stage, message, duration_ms, summary_json)
                    VALUES (?, ?, 'running', ?, 'running', 0, '{}')
                    """,
                    (_utc_now(), str(trigger), str(stage)),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        stage: str,
        message: str,
        duration_ms: int,
        summary: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, stage = ?, message = ?, duration_ms = ?, summary_json = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(stage),
                        str(message),
                        int(duration_ms),
                        json.dumps(summary, ensure_ascii=False),
                        int(run_id),
                    ),
                )
                conn.commit()

    @staticmethod
    def _run_row(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        item["summary"] = _decode_json(item.pop("summary_json"))
        return item

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, stage, message, duration_ms, summary_json
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [self._run_row(row) for row in rows]

    def last_finished_run(self) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, stage, message, duration_ms, summary_json
                    FROM sync_runs
                    WHERE status != 'running'
                    ORDER BY id DESC
                    LIMIT 1
                    """
                ).fetchone()
        return self._run_row(row) if row else None

    def record_sync_log(
        self,
        *,
        user_key: str,
        direction: str,
        entity_type: str,
        status: str,
        entity_id: str = "",
        calendar_event_id: str = "",
        message: str = "",
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_log(
                        created_at, user_key, direction, entity_type, entity_id,
                        calendar_event_id, status, message
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        str(user_key),
                        str(direction),
                        str(entity_type),
                        str(entity_id or ""),
                        str(calendar_event_id or ""),
                        str(status),
                        str(message or ""),
                    ),
                )
                conn.commit()

    def recent_sync_log(self, user_key: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_key is None:
                    rows = conn.execute(
                        "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM sync_log WHERE user_key = ? ORDER BY id DESC LIMIT ?",
                        (str(user_key), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, action, details_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = _decode_json(item.pop("details_json"))
            output.append(item)
        return output
