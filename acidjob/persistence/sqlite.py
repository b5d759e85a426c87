"""SQLite implementation of the Run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Collection

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


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        job_name=row["job_name"],
        args_fingerprint=row["args_fingerprint"],
        job_args=json.loads(row["job_args"]) if row["job_args"] else {},
        recovery_point=row["recovery_point"],
        locked_at=_dt(row["locked_at"]),
        last_run_at=_dt(row["last_run_at"]),
        error_object=(
            ErrorObject.model_validate_json(row["error_object"])
            if row["error_object"]
            else None
        ),
        staged=bool(row["staged"]),
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        id=row["id"],
        adapter=row["adapter"],
        job_name=row["job_name"],
        job_args=json.loads(row["job_args"]) if row["job_args"] else {},
        idempotency_key=row["idempotency_key"],
        run_id=row["run_id"],
        created_at=_dt(row["created_at"]),
        dispatched_at=_dt(row["dispatched_at"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
    )


class SQLiteRunTransaction(RunTransaction):
    """Statements issued on the connection owned by one transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def _run(self, query: str, params: tuple) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    async def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        return await asyncio.to_thread(self._run, query, params)

    async def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = await self._execute(query, *params)
        return await asyncio.to_thread(cur.fetchall)

    async def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = await self._execute(query, *params)
        return await asyncio.to_thread(cur.fetchone)

    # ------------------------------------------------------------------
    async def insert_run(self, run: Run) -> None:
        try:
            await self._execute(
                f"INSERT INTO acidjob_runs ({_RUN_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                run.id,
                run.idempotency_key,
                run.job_name,
                run.args_fingerprint,
                json.dumps(run.job_args),
                run.recovery_point,
                _iso(run.locked_at),
                _iso(run.last_run_at),
                run.error_object.model_dump_json() if run.error_object else None,
                int(run.staged),
                _iso(run.created_at),
                _iso(run.updated_at),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRunError(run.idempotency_key, run.job_name) from exc

    async def find_run(
        self, idempotency_key: str, job_name: str, args_fingerprint: str
    ) -> Run | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM acidjob_runs "
            "WHERE idempotency_key = ? AND job_name = ? AND args_fingerprint = ?",
            idempotency_key,
            job_name,
            args_fingerprint,
        )
        return _row_to_run(row) if row else None

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM acidjob_runs WHERE id = ?", run_id
        )
        return _row_to_run(row) if row else None

    async def save_run(self, run: Run) -> None:
        await self._execute(
            """
            UPDATE acidjob_runs
            SET job_args = ?, recovery_point = ?, locked_at = ?, last_run_at = ?,
                error_object = ?, updated_at = ?
            WHERE id = ?
            """,
            json.dumps(run.job_args),
            run.recovery_point,
            _iso(run.locked_at),
            _iso(run.last_run_at),
            run.error_object.model_dump_json() if run.error_object else None,
            _iso(run.updated_at),
            run.id,
        )

    async def try_lock(
        self, run_id: str, locked_at: datetime, stale_before: datetime
    ) -> bool:
        cur = await self._execute(
            """
            UPDATE acidjob_runs
            SET locked_at = ?, last_run_at = ?, updated_at = ?
            WHERE id = ? AND (locked_at IS NULL OR locked_at < ?)
            """,
            _iso(locked_at),
            _iso(locked_at),
            _iso(locked_at),
            run_id,
            _iso(stale_before),
        )
        return cur.rowcount == 1

    async def add_outbox_entry(self, entry: OutboxEntry) -> None:
        await self._execute(
            f"INSERT INTO acidjob_outbox ({_OUTBOX_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            entry.id,
            entry.adapter,
            entry.job_name,
            json.dumps(entry.job_args),
            entry.idempotency_key,
            entry.run_id,
            _iso(entry.created_at),
            _iso(entry.dispatched_at),
            entry.attempts,
            entry.last_error,
        )

    async def pending_outbox_entries(
        self, limit: int, exclude: Collection[str] = ()
    ) -> list[OutboxEntry]:
        excluded = list(exclude)
        skip = f" AND id NOT IN ({', '.join('?' * len(excluded))})" if excluded else ""
        rows = await self._fetchall(
            f"SELECT {_OUTBOX_COLUMNS} FROM acidjob_outbox "
            f"WHERE dispatched_at IS NULL{skip} ORDER BY attempts, created_at LIMIT ?",
            *excluded,
            limit,
        )
        return [_row_to_entry(r) for r in rows]

    async def record_outbox_failure(self, entry_id: str, error: str) -> None:
        await self._execute(
            "UPDATE acidjob_outbox SET attempts = attempts + 1, last_error = ? WHERE id = ?",
            error,
            entry_id,
        )

    async def mark_outbox_dispatched(self, entry_id: str, dispatched_at: datetime) -> None:
        await self._execute(
            "UPDATE acidjob_outbox SET dispatched_at = ? WHERE id = ?",
            _iso(dispatched_at),
            entry_id,
        )

    async def execute(self, query: str, *params: Any) -> None:
        await self._execute(query, *params)

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        rows = await self._fetchall(query, *params)
        return [dict(r) for r in rows]


class SQLiteRunRepository(RunRepository):
    """Persist Runs using SQLite.

    Every transaction opens its own connection (WAL mode, ``BEGIN IMMEDIATE``)
    so a file path is required; ``:memory:`` databases are not shared between
    connections.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS acidjob_runs (
                    id TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL,
                    job_name TEXT NOT NULL,
                    args_fingerprint TEXT NOT NULL,
                    job_args TEXT NOT NULL,
                    recovery_point TEXT NOT NULL,
                    locked_at TEXT,
                    last_run_at TEXT NOT NULL,
                    error_object TEXT,
                    staged INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_acidjob_runs_identity
                ON acidjob_runs (idempotency_key, job_name, args_fingerprint)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS acidjob_outbox (
                    id TEXT PRIMARY KEY,
                    adapter TEXT NOT NULL,
                    job_name TEXT NOT NULL,
                    job_args TEXT,
                    idempotency_key TEXT,
                    run_id TEXT,
                    created_at TEXT NOT NULL,
                    dispatched_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_acidjob_outbox_pending
                ON acidjob_outbox (dispatched_at, created_at)
                """
            )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Repository API
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteRunTransaction]:
        conn = await asyncio.to_thread(self._connect)
        try:
            await asyncio.to_thread(conn.execute, "BEGIN IMMEDIATE")
            try:
                yield SQLiteRunTransaction(conn)
            except BaseException:
                await asyncio.to_thread(conn.rollback)
                raise
            await asyncio.to_thread(conn.commit)
        finally:
            await asyncio.to_thread(conn.close)

    async def _read(self, query: str, *params: Any) -> list[sqlite3.Row]:
        def _query() -> list[sqlite3.Row]:
            conn = self._connect()
            try:
                return conn.execute(query, params).fetchall()
            finally:
                conn.close()

        return await asyncio.to_thread(_query)

    async def get_run(self, run_id: str) -> Run | None:
        rows = await self._read(
            f"SELECT {_RUN_COLUMNS} FROM acidjob_runs WHERE id = ?", run_id
        )
        return _row_to_run(rows[0]) if rows else None

    async def list_runs(self, staged: bool | None = None) -> list[Run]:
        if staged is None:
            rows = await self._read(
                f"SELECT {_RUN_COLUMNS} FROM acidjob_runs ORDER BY created_at"
            )
        else:
            rows = await self._read(
                f"SELECT {_RUN_COLUMNS} FROM acidjob_runs WHERE staged = ? ORDER BY created_at",
                int(staged),
            )
        return [_row_to_run(r) for r in rows]

    async def list_outbox_entries(self, pending_only: bool = False) -> list[OutboxEntry]:
        query = f"SELECT {_OUTBOX_COLUMNS} FROM acidjob_outbox"
        if pending_only:
            query += " WHERE dispatched_at IS NULL"
        rows = await self._read(query + " ORDER BY created_at")
        return [_row_to_entry(r) for r in rows]
