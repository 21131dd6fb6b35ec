"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg

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


def _param(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        if isinstance(value, list):
            value = [v.model_dump(mode="json") if hasattr(v, "model_dump") else v for v in value]
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_record(row: asyncpg.Record) -> JobExecutionRecord:
    data = {col: row[col] for col in _JOB_COLUMNS}
    for col in _JSON_COLUMNS:
        if isinstance(data[col], str):
            data[col] = json.loads(data[col])
    data["logs"] = data["logs"] or []
    data["metadata"] = data["metadata"] or {}
    return JobExecutionRecord.model_validate(data)


def _row_to_state(row: asyncpg.Record) -> CycleState:
    data = row["data"]
    if isinstance(data, str):
        return CycleState.model_validate_json(data)
    return CycleState.model_validate(data)


class PostgresExecutionRepository(ExecutionRepository):
    """Persist cycle state and job records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_executions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                workflow_name TEXT NOT NULL,
                cycle_number INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                scheduled_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                ended_at TIMESTAMPTZ,
                progress DOUBLE PRECISION NOT NULL DEFAULT 0,
                result JSONB,
                error TEXT,
                logs JSONB NOT NULL DEFAULT '[]'::jsonb,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_job_executions_key
            ON job_executions (workflow_name, cycle_number, step_id)
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_states (
                name TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                last_updated TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Job execution records
    async def create_job(self, record: JobExecutionRecord) -> JobExecutionRecord:
        data = record.model_dump()
        columns = ", ".join(_JOB_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_JOB_COLUMNS) + 1))
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO job_executions ({columns}) VALUES ({placeholders})",
                *(_param(col, data[col]) for col in _JOB_COLUMNS),
            )
        finally:
            await conn.close()
        return record.model_copy(deep=True)

    async def get_job(self, record_id: str) -> JobExecutionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM job_executions WHERE id = $1", record_id
            )
        finally:
            await conn.close()
        return _row_to_record(row) if row else None

    async def find_job(
        self, workflow_name: str, cycle_number: int, step_id: str
    ) -> JobExecutionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM job_executions
                WHERE workflow_name = $1 AND cycle_number = $2 AND step_id = $3
                ORDER BY seq DESC LIMIT 1
                """,
                workflow_name,
                cycle_number,
                step_id,
            )
        finally:
            await conn.close()
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
            params.append(workflow_name)
            clauses.append(f"workflow_name = ${len(params)}")
        if cycle_number is not None:
            params.append(cycle_number)
            clauses.append(f"cycle_number = ${len(params)}")
        if statuses is not None:
            params.append([JobStatus(s).value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT * FROM job_executions{where} ORDER BY seq", *params
            )
        finally:
            await conn.close()
        return [_row_to_record(r) for r in rows]

    async def update_job(
        self, record_id: str, **fields: Any
    ) -> JobExecutionRecord | None:
        check_job_fields(fields)
        if not fields:
            return await self.get_job(record_id)
        assignments = ", ".join(
            f"{col} = ${i}" for i, col in enumerate(fields, start=1)
        )
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"UPDATE job_executions SET {assignments} "
                f"WHERE id = ${len(fields) + 1} RETURNING *",
                *(_param(col, value) for col, value in fields.items()),
                record_id,
            )
        finally:
            await conn.close()
        return _row_to_record(row) if row else None

    async def append_job_log(
        self, record_id: str, entry: JobLogEntry, limit: int
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE job_executions SET logs = (
                    SELECT COALESCE(jsonb_agg(e.value ORDER BY e.ord), '[]'::jsonb)
                    FROM (
                        SELECT value, ord
                        FROM jsonb_array_elements(logs || jsonb_build_array($2::jsonb))
                            WITH ORDINALITY AS t(value, ord)
                        ORDER BY ord DESC
                        LIMIT $3
                    ) AS e
                )
                WHERE id = $1
                """,
                record_id,
                entry.model_dump_json(),
                limit,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Cycle state
    async def get_cycle_state(self, name: str) -> CycleState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM cycle_states WHERE name = $1", name
            )
        finally:
            await conn.close()
        return _row_to_state(row) if row else None

    async def save_cycle_state(self, name: str, fields: dict[str, Any]) -> CycleState:
        # validate the field types before they reach the JSON merge
        stamped = CycleState.model_validate(
            {"last_updated": utcnow(), **fields, "name": name}
        )
        partial = stamped.model_dump(
            mode="json", include={*fields, "name", "last_updated"}
        )
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO cycle_states (name, data, last_updated)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (name) DO UPDATE
                SET data = cycle_states.data || EXCLUDED.data,
                    last_updated = EXCLUDED.last_updated
                RETURNING data
                """,
                name,
                json.dumps(partial),
                stamped.last_updated,
            )
        finally:
            await conn.close()
        return _row_to_state(row)

    async def latest_cycle_state(self) -> CycleState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM cycle_states ORDER BY last_updated DESC LIMIT 1"
            )
        finally:
            await conn.close()
        return _row_to_state(row) if row else None

    async def list_cycle_states(self) -> list[CycleState]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT data FROM cycle_states ORDER BY name")
        finally:
            await conn.close()
        return [_row_to_state(r) for r in rows]
