from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """Durable state: persisted key/values, submission history and the audit trail."""

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
        CREATE TABLE IF NOT EXISTS submission_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            week_id TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            record_count INTEGER NOT NULL,
            new_records INTEGER NOT NULL,
            marked_as_invalid INTEGER NOT NULL,
            batch_id TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            subject TEXT NOT NULL,
            ref TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_submission_run(
        self,
        *,
        week_id: str,
        status: str,
        message: str,
        duration_ms: int,
        record_count: int,
        new_records: int = 0,
        marked_as_invalid: int = 0,
        batch_id: str = "",
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO submission_runs(
                        run_at, week_id, status, message, duration_ms,
                        record_count, new_records, marked_as_invalid, batch_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        str(week_id),
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(record_count),
                        int(new_records),
                        int(marked_as_invalid),
                        str(batch_id),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_submission_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, week_id, status, message, duration_ms,
                           record_count, new_records, marked_as_invalid, batch_id
                    FROM submission_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        subject: str,
        ref: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, subject, ref, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), subject, ref, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, subject, ref, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, subject, ref, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()
                return cursor.rowcount > 0

    def meta_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT key FROM app_meta ORDER BY key").fetchall()
        return [str(row["key"]) for row in rows if str(row["key"]).startswith(prefix)]

    def get_json_meta(self, key: str, default: Any = None) -> Any:
        raw = self.get_meta(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def set_json_meta(self, key: str, value: Any) -> None:
        self.set_meta(key, json.dumps(value, ensure_ascii=False))
