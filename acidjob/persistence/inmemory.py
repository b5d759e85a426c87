"""In-memory implementation of the Run repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Dict

from ..errors import DuplicateRunError
from .models import OutboxEntry, Run
from .repository import RunRepository, RunTransaction


class InMemoryRunTransaction(RunTransaction):
    """Works on private copies that replace the repository state on commit."""

    def __init__(self, runs: Dict[str, Run], outbox: Dict[str, OutboxEntry]) -> None:
        self.runs = {k: v.model_copy(deep=True) for k, v in runs.items()}
        self.outbox = {k: v.model_copy(deep=True) for k, v in outbox.items()}

    async def insert_run(self, run: Run) -> None:
        existing = await self.find_run(
            run.idempotency_key, run.job_name, run.args_fingerprint
        )
        if existing is not None:
            raise DuplicateRunError(run.idempotency_key, run.job_name)
        self.runs[run.id] = run.model_copy(deep=True)

    async def find_run(
        self, idempotency_key: str, job_name: str, args_fingerprint: str
    ) -> Run | None:
        for run in self.runs.values():
            if (
                run.idempotency_key == idempotency_key
                and run.job_name == job_name
                and run.args_fingerprint == args_fingerprint
            ):
                return run.model_copy(deep=True)
        return None

    async def get_run(self, run_id: str) -> Run | None:
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save_run(self, run: Run) -> None:
        if run.id in self.runs:
            self.runs[run.id] = run.model_copy(deep=True)

    async def try_lock(
        self, run_id: str, locked_at: datetime, stale_before: datetime
    ) -> bool:
        run = self.runs.get(run_id)
        if run is None:
            return False
        if run.locked_at is not None and run.locked_at >= stale_before:
            return False
        run.locked_at = locked_at
        run.last_run_at = locked_at
        run.updated_at = locked_at
        return True

    async def add_outbox_entry(self, entry: OutboxEntry) -> None:
        self.outbox[entry.id] = entry.model_copy(deep=True)

    async def pending_outbox_entries(
        self, limit: int, exclude: Collection[str] = ()
    ) -> list[OutboxEntry]:
        pending = sorted(
            (e for e in self.outbox.values() if e.pending and e.id not in exclude),
            key=lambda e: (e.attempts, e.created_at),
        )
        return [e.model_copy(deep=True) for e in pending[:limit]]

    async def record_outbox_failure(self, entry_id: str, error: str) -> None:
        entry = self.outbox.get(entry_id)
        if entry:
            entry.attempts += 1
            entry.last_error = error

    async def mark_outbox_dispatched(self, entry_id: str, dispatched_at: datetime) -> None:
        entry = self.outbox.get(entry_id)
        if entry:
            entry.dispatched_at = dispatched_at

    async def execute(self, query: str, *params: Any) -> None:
        raise NotImplementedError("The in-memory repository does not run SQL")

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        raise NotImplementedError("The in-memory repository does not run SQL")


class InMemoryRunRepository(RunRepository):
    """Store Runs and outbox entries in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions are serialised.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._outbox: Dict[str, OutboxEntry] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryRunTransaction]:
        async with self._lock:
            tx = InMemoryRunTransaction(self._runs, self._outbox)
            yield tx
            self._runs = tx.runs
            self._outbox = tx.outbox

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, staged: bool | None = None) -> list[Run]:
        return [
            run.model_copy(deep=True)
            for run in sorted(self._runs.values(), key=lambda r: r.created_at)
            if staged is None or run.staged == staged
        ]

    async def list_outbox_entries(self, pending_only: bool = False) -> list[OutboxEntry]:
        return [
            entry.model_copy(deep=True)
            for entry in sorted(self._outbox.values(), key=lambda e: e.created_at)
            if not pending_only or entry.pending
        ]
