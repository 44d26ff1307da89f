from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from calsync.models import Changes, Event, serialize_datetime

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trigger TEXT NOT NULL,
    dry_run INTEGER NOT NULL,
    status TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    deletes INTEGER NOT NULL DEFAULT 0,
    updates INTEGER NOT NULL DEFAULT 0,
    adds INTEGER NOT NULL DEFAULT 0,
    summary TEXT NOT NULL DEFAULT '',
    error_trace TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER REFERENCES sync_runs(id),
    applied_at TEXT NOT NULL,
    action TEXT NOT NULL,
    source_id TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    title TEXT NOT NULL,
    start TEXT,
    event_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS operations_run_id ON operations(run_id);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite history of sync runs and the calendar writes each one made.

    A run row keeps the ``Changes`` rendering of what was planned, so dry
    runs leave the same trail as real ones. Operation rows only exist for
    writes that reached the calendar.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._session() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            finally:
                conn.close()

    def _rows(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        with self._session() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def open_run(self, trigger: str, dry_run: bool = False) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_runs(trigger, dry_run, status, started_at) VALUES (?, ?, 'running', ?)",
                (trigger, int(bool(dry_run)), _utc_now()),
            )
            return int(cursor.lastrowid)

    def close_run(
        self,
        run_id: int,
        *,
        status: str,
        message: str,
        duration_ms: int,
        changes: Changes | None = None,
        error_trace: str = "",
    ) -> None:
        changes = changes or Changes()
        with self._session() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, finished_at = ?, duration_ms = ?,
                    deletes = ?, updates = ?, adds = ?, summary = ?, error_trace = ?
                WHERE id = ?
                """,
                (
                    status,
                    message,
                    _utc_now(),
                    int(duration_ms),
                    len(changes.deletes),
                    len(changes.updates),
                    len(changes.adds),
                    str(changes),
                    error_trace,
                    int(run_id),
                ),
            )

    def record_operation(self, run_id: int | None, action: str, event: Event) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO operations(run_id, applied_at, action, source_id, remote_id, title, start, event_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    _utc_now(),
                    action,
                    event.source_id,
                    event.remote_id,
                    event.title,
                    serialize_datetime(event.start),
                    json.dumps(event.to_dict(), ensure_ascii=False),
                ),
            )

    def runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent runs first."""
        rows = self._rows("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (max(1, limit),))
        for row in rows:
            row["dry_run"] = bool(row["dry_run"])
        return rows

    def operations(self, run_id: int | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """The latest operations, oldest first, so they read in applied order."""
        where, params = ("WHERE run_id = ?", (int(run_id),)) if run_id is not None else ("", ())
        rows = self._rows(
            f"SELECT * FROM operations {where} ORDER BY id DESC LIMIT ?",  # nosec B608
            params + (max(1, limit),),
        )
        rows.reverse()
        for row in rows:
            row["event"] = json.loads(row.pop("event_json"))
        return rows
