"""PostgreSQL implementation of the Run repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection

import asyncpg

from ..errors import DuplicateRunError
from .models import ErrorObject, OutboxEntry, Run
from .repository import RunRepository, RunTransaction

_RUN_COLUMNS = (
    "id, idempotency_key, job_name, args_fingerprint, job_args, recovery_point, "
    "locked_at, last_run_at, error_object, staged, created_at, updated_at"
)
_OUTBOX_COLUMNS = (
    "id, adapter, job_name, job_args, idempotency_key, run_id, created_at, dispatched_at, "
    "attempts, last_error"
)


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


def _record_to_run(r: asyncpg.Record) -> Run:
    error = _json(r["error_object"])
    return Run(
        id=r["id"],
        idempotency_key=r["idempotency_key"],
        job_name=r["job_name"],
        args_fingerprint=r["args_fingerprint"],
        job_args=_json(r["job_args"]) or {},
        recovery_point=r["recovery_point"],
        locked_at=r["locked_at"],
        last_run_at=r["last_run_at"],
        error_object=ErrorObject.model_validate(error) if error else None,
        staged=r["staged"],
        created_at=r["created_at"],
        updated_at=r["updated_at"],
    )


def _record_to_entry(r: asyncpg.Record) -> OutboxEntry:
    return OutboxEntry(
        id=r["id"],
        adapter=r["adapter"],
        job_name=r["job_name"],
        job_args=_json(r["job_args"]) or {},
        idempotency_key=r["idempotency_key"],
        run_id=r["run_id"],
        created_at=r["created_at"],
        dispatched_at=r["dispatched_at"],
        attempts=r["attempts"],
        last_error=r["last_error"],
    )


class PostgresRunTransaction(RunTransaction):
    """Statements issued on the connection owned by one transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def insert_run(self, run: Run) -> None:
        try:
            await self._conn.execute(
                f"INSERT INTO acidjob_runs ({_RUN_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                run.id,
                run.idempotency_key,
                run.job_name,
                run.args_fingerprint,
                json.dumps(run.job_args),
                run.recovery_point,
                run.locked_at,
                run.last_run_at,
                run.error_object.model_dump_json() if run.error_object else None,
                run.staged,
                run.created_at,
                run.updated_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRunError(run.idempotency_key, run.job_name) from exc

    async def find_run(
        self, idempotency_key: str, job_name: str, args_fingerprint: str
    ) -> Run | None:
        row = await self._conn.fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM acidjob_runs "
            "WHERE idempotency_key = $1 AND job_name = $2 AND args_fingerprint = $3",
            idempotency_key,
            job_name,
            args_fingerprint,
        )
        return _record_to_run(row) if row else None

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._conn.fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM acidjob_runs WHERE id = $1", run_id
        )
        return _record_to_run(row) if row else None

    async def save_run(self, run: Run) -> None:
        await self._conn.execute(
            """
            UPDATE acidjob_runs
            SET job_args = $1, recovery_point = $2, locked_at = $3, last_run_at = $4,
                error_object = $5, updated_at = $6
            WHERE id = $7
            """,
            json.dumps(run.job_args),
            run.recovery_point,
            run.locked_at,
            run.last_run_at,
            run.error_object.model_dump_json() if run.error_object else None,
            run.updated_at,
            run.id,
        )

    async def try_lock(
        self, run_id: str, locked_at: datetime, stale_before: datetime
    ) -> bool:
        status = await self._conn.execute(
            """
            UPDATE acidjob_runs
            SET locked_at = $1, last_run_at = $1, updated_at = $1
            WHERE id = $2 AND (locked_at IS NULL OR locked_at < $3)
            """,
            locked_at,
            run_id,
            stale_before,
        )
        return status == "UPDATE 1"

    async def add_outbox_entry(self, entry: OutboxEntry) -> None:
        await self._conn.execute(
            f"INSERT INTO acidjob_outbox ({_OUTBOX_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
            entry.id,
            entry.adapter,
            entry.job_name,
            json.dumps(entry.job_args),
            entry.idempotency_key,
            entry.run_id,
            entry.created_at,
            entry.dispatched_at,
            entry.attempts,
            entry.last_error,
        )

    async def pending_outbox_entries(
        self, limit: int, exclude: Collection[str] = ()
    ) -> list[OutboxEntry]:
        rows = await self._conn.fetch(
            f"SELECT {_OUTBOX_COLUMNS} FROM acidjob_outbox "
            "WHERE dispatched_at IS NULL AND NOT (id = ANY($2::text[])) "
            "ORDER BY attempts, created_at LIMIT $1 "
            "FOR UPDATE SKIP LOCKED",
            limit,
            list(exclude),
        )
        return [_record_to_entry(r) for r in rows]

    async def record_outbox_failure(self, entry_id: str, error: str) -> None:
        await self._conn.execute(
            "UPDATE acidjob_outbox SET attempts = attempts + 1, last_error = $1 WHERE id = $2",
            error,
            entry_id,
        )

    async def mark_outbox_dispatched(self, entry_id: str, dispatched_at: datetime) -> None:
        await self._conn.execute(
            "UPDATE acidjob_outbox SET dispatched_at = $1 WHERE id = $2",
            dispatched_at,
            entry_id,
        )

    async def execute(self, query: str, *params: Any) -> None:
        await self._conn.execute(query, *params)

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        rows = await self._conn.fetch(query, *params)
        return [dict(r) for r in rows]


class PostgresRunRepository(RunRepository):
    """Persist Runs using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS acidjob_runs (
                id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL,
                job_name TEXT NOT NULL,
                args_fingerprint TEXT NOT NULL,
                job_args JSONB NOT NULL,
                recovery_point TEXT NOT NULL,
                locked_at TIMESTAMPTZ,
                last_run_at TIMESTAMPTZ NOT NULL,
                error_object JSONB,
                staged BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_acidjob_runs_identity
            ON acidjob_runs (idempotency_key, job_name, args_fingerprint)
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS acidjob_outbox (
                id TEXT PRIMARY KEY,
                adapter TEXT NOT NULL,
                job_name TEXT NOT NULL,
                job_args JSONB,
                idempotency_key TEXT,
                run_id TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                dispatched_at TIMESTAMPTZ,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT
            )
            """
        )
        await conn.execute(
            """
            ALTER TABLE acidjob_outbox
                ADD COLUMN IF NOT EXISTS attempts INTEGER NOT NULL DEFAULT 0,
                ADD COLUMN IF NOT EXISTS last_error TEXT
            """
        )

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresRunTransaction]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                yield PostgresRunTransaction(conn)
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM acidjob_runs WHERE id = $1", run_id
            )
        finally:
            await conn.close()
        return _record_to_run(row) if row else None

    async def list_runs(self, staged: bool | None = None) -> list[Run]:
        conn = await self._connect()
        try:
            if staged is None:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM acidjob_runs ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM acidjob_runs "
                    "WHERE staged = $1 ORDER BY created_at",
                    staged,
                )
        finally:
            await conn.close()
        return [_record_to_run(r) for r in rows]

    async def list_outbox_entries(self, pending_only: bool = False) -> list[OutboxEntry]:
        query = f"SELECT {_OUTBOX_COLUMNS} FROM acidjob_outbox"
        if pending_only:
            query += " WHERE dispatched_at IS NULL"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY created_at")
        finally:
            await conn.close()
        return [_record_to_entry(r) for r in rows]
