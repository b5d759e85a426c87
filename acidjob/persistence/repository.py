"""Repository abstraction for Run and Outbox persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Collection, Protocol

from .models import OutboxEntry, Run


class RunTransaction(Protocol):
    """Operations available inside one store transaction.

    Everything written through a transaction becomes visible together on
    commit and disappears together on rollback, including the raw statements
    issued by step bodies through ``execute``.
    """

    async def insert_run(self, run: Run) -> None:
        """Insert a new Run. Raises ``DuplicateRunError`` on a unique violation."""

    async def find_run(
        self, idempotency_key: str, job_name: str, args_fingerprint: str
    ) -> Run | None:
        """Load the Run identified by its unique triple."""

    async def get_run(self, run_id: str) -> Run | None:
        """Load a Run by id."""

    async def save_run(self, run: Run) -> None:
        """Persist the mutable columns of ``run``."""

    async def try_lock(
        self, run_id: str, locked_at: datetime, stale_before: datetime
    ) -> bool:
        """Set ``locked_at`` if the Run is unlocked or locked before ``stale_before``."""

    async def add_outbox_entry(self, entry: OutboxEntry) -> None:
        """Record a follow-on job."""

    async def pending_outbox_entries(
        self, limit: int, exclude: Collection[str] = ()
    ) -> list[OutboxEntry]:
        """Return undispatched entries not in ``exclude``, claiming them where supported.

        Entries that failed fewer times come first, then the oldest.
        """

    async def record_outbox_failure(self, entry_id: str, error: str) -> None:
        """Count a failed dispatch of an entry and keep its last error."""

    async def mark_outbox_dispatched(self, entry_id: str, dispatched_at: datetime) -> None:
        """Mark an outbox entry as forwarded to the queue."""

    async def execute(self, query: str, *params: Any) -> None:
        """Run a backend-specific statement inside this transaction."""

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        """Run a backend-specific query inside this transaction."""


class RunRepository(Protocol):
    """Protocol for Run store backends."""

    def transaction(self) -> AsyncContextManager[RunTransaction]:
        """Open a transaction that commits on success and rolls back on error."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a committed Run by id."""

    async def list_runs(self, staged: bool | None = None) -> list[Run]:
        """Return committed Runs, optionally filtered by classification."""

    async def list_outbox_entries(self, pending_only: bool = False) -> list[OutboxEntry]:
        """Return committed outbox entries."""
