from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Mapping, Protocol

from routine_sync.errors import DuplicateRecordError


class RecordStore(Protocol):
    """Keyed tabular storage. No transactions, no compound queries.

    ``create`` raises ``DuplicateRecordError`` when ``(kind, id)`` is taken.
    """

    def create(self, kind: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    def find(self, kind: str, filter: Mapping[str, Any] | None = None) -> list[dict[str, Any]]: ...

    def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> bool: ...

    def delete(self, kind: str, record_id: str) -> bool: ...


def matches_filter(record: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    for key, expected in (filter or {}).items():
        if record.get(key) != expected:
            return False
    return True


class SQLiteRecordStore:
    """Row-per-record store; payloads are JSON and filtering happens client-side."""

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
        CREATE TABLE IF NOT EXISTS records (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            UNIQUE (kind, id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def create(self, kind: str, record: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(record)
        record_id = str(payload.get("id") or "").strip() or str(uuid.uuid4())
        payload["id"] = record_id
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        "INSERT INTO records(kind, id, payload_json) VALUES (?, ?, ?)",
                        (kind, record_id, json.dumps(payload, ensure_ascii=False)),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateRecordError(kind, record_id) from exc
                conn.commit()
        return payload

    def find(self, kind: str, filter: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT payload_json FROM records WHERE kind = ? ORDER BY seq",
                    (kind,),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            record = json.loads(row["payload_json"] or "{}")
            if matches_filter(record, filter):
                output.append(record)
        return output

    def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM records WHERE kind = ? AND id = ?",
                    (kind, str(record_id)),
                ).fetchone()
                if row is None:
                    return False
                payload = json.loads(row["payload_json"] or "{}")
                payload.update(dict(fields))
                payload["id"] = str(record_id)
                conn.execute(
                    "UPDATE records SET payload_json = ? WHERE kind = ? AND id = ?",
                    (json.dumps(payload, ensure_ascii=False), kind, str(record_id)),
                )
                conn.commit()
        return True

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM records WHERE kind = ? AND id = ?",
                    (kind, str(record_id)),
                )
                conn.commit()
                return cursor.rowcount > 0
