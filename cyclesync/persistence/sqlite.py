"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from .models import CycleState, JobExecutionRecord, JobLogEntry, JobStatus, utcnow
from .repository import ExecutionRepository, check_job_fields

_JSON_COLUMNS = ("result", "logs", "metadata")
_JOB_COLUMNS = (
    "id",
    "workflow_name",
    "cycle_number",
    "step_id",
    "name",
    "status",
    "scheduled_at",
    "started_at",
    "ended_at",
    "progress",
    "result",
    "error",
    "logs",
    "metadata",
)


def _to_column(value: Any, json_column: bool = False) -> Any:
    if json_column:
        if isinstance(value, list):
            value = [v.model_dump(mode="json") if hasattr(v, "model_dump") else v for v in value]
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row_to_record(row: sqlite3.Row) -> JobExecutionRecord:
    data = {col: row[col] for col in _JOB_COLUMNS}
    for col in _JSON_COLUMNS:
        data[col] = json.loads(data[col]) if data[col] is not None else None
    data["logs"] = data["logs"] or []
    data["metadata"] = data["metadata"] or {}
    return JobExecutionRecord.model_validate(data)


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist cycle state and job records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_name TEXT NOT NULL,
                cycle_number INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                scheduled_at TEXT NOT NULL,
                started_at TEXT,
                ended_at TEXT,
                progress REAL NOT NULL DEFAULT 0,
                result TEXT,
                error TEXT,
                logs TEXT NOT NULL DEFAULT '[]',
                metadata TEXT NOT NULL DEFAULT '{}'
            )
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_job_executions_key
            ON job_executions (workflow_name, cycle_number, step_id)
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_states (
                name TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _append_log(self, record_id: str, entry: JobLogEntry, limit: int) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT logs FROM job_executions WHERE id = ?", (record_id,))
            row = cur.fetchone()
            if row is None:
                return
            logs = json.loads(row["logs"]) + [entry.model_dump(mode="json")]
            cur.execute(
                "UPDATE job_executions SET logs = ? WHERE id = ?",
                (json.dumps(logs[-limit:]), record_id),
            )
            self._conn.commit()

    def _merge_state(self, name: str, fields: dict[str, Any]) -> CycleState:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT data FROM cycle_states WHERE name = ?", (name,))
            row = cur.fetchone()
            base = json.loads(row["data"]) if row else {}
            state = CycleState.model_validate(
                {**base, "last_updated": utcnow(), **fields, "name": name}
            )
            cur.execute(
                """
                INSERT INTO cycle_states (name, data, last_updated) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET data = excluded.data,
                    last_updated = excluded.last_updated
                """,
                (name, state.model_dump_json(), state.last_updated.isoformat()),
            )
            self._conn.commit()
            return state

    # ------------------------------------------------------------------
    # Repository API
    async def create_job(self, record: JobExecutionRecord) -> JobExecutionRecord:
        data = record.model_dump()
        columns = ", ".join(_JOB_COLUMNS)
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO job_executions ({columns}) VALUES ({placeholders})",
            *(_to_column(data[col], col in _JSON_COLUMNS) for col in _JOB_COLUMNS),
        )
        return record.model_copy(deep=True)

    async def get_job(self, record_id: str) -> JobExecutionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM job_executions WHERE id = ?", record_id
        )
        return _row_to_record(row) if row else None

    async def find_job(
        self, workflow_name: str, cycle_number: int, step_id: str
    ) -> JobExecutionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM job_executions
            WHERE workflow_name = ? AND cycle_number = ? AND step_id = ?
            ORDER BY seq DESC LIMIT 1
            """,
            workflow_name,
            cycle_number,
            step_id,
        )
        return _row_to_record(row) if row else None

    async def find_jobs(
        self,
        workflow_name: Optional[str] = None,
        cycle_number: Optional[int] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> list[JobExecutionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_name is not None:
            clauses.append("workflow_name = ?")
            params.append(workflow_name)
        if cycle_number is not None:
            clauses.append("cycle_number = ?")
            params.append(cycle_number)
        if statuses is not None:
            values = [JobStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM job_executions{where} ORDER BY seq",
            *params,
        )
        return [_row_to_record(r) for r in rows]

    async def update_job(
        self, record_id: str, **fields: Any
    ) -> JobExecutionRecord | None:
        check_job_fields(fields)
        if fields:
            assignments = ", ".join(f"{col} = ?" for col in fields)
            values = [_to_column(v, col in _JSON_COLUMNS) for col, v in fields.items()]
            await asyncio.to_thread(
                self._execute,
                f"UPDATE job_executions SET {assignments} WHERE id = ?",
                *values,
                record_id,
            )
        return await self.get_job(record_id)

    async def append_job_log(
        self, record_id: str, entry: JobLogEntry, limit: int
    ) -> None:
        await asyncio.to_thread(self._append_log, record_id, entry, limit)

    async def get_cycle_state(self, name: str) -> CycleState | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM cycle_states WHERE name = ?", name
        )
        return CycleState.model_validate_json(row["data"]) if row else None

    async def save_cycle_state(self, name: str, fields: dict[str, Any]) -> CycleState:
        return await asyncio.to_thread(self._merge_state, name, fields)

    async def latest_cycle_state(self) -> CycleState | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM cycle_states ORDER BY last_updated DESC LIMIT 1",
        )
        return CycleState.model_validate_json(row["data"]) if row else None

    async def list_cycle_states(self) -> list[CycleState]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM cycle_states ORDER BY name"
        )
        return [CycleState.model_validate_json(r["data"]) for r in rows]
