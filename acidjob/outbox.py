"""Transactional outbox: recording follow-on jobs and forwarding them to the queue."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence, Union

from .config import AcidJobConfig, load_config
from .contracts import JobMessage
from .persistence.models import OutboxEntry, utcnow
from .persistence.repository import RunRepository
from .registry import get_job
from .transports import BaseTransport, get_transport, resolve_adapter_name

if TYPE_CHECKING:
    from .job import IdempotentJob

logger = logging.getLogger(__name__)

JobRef = Union[str, type["IdempotentJob"]]


def build_outbox_entry(
    job: JobRef,
    args: Sequence[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
    run_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> OutboxEntry:
    """Describe a follow-on job; nothing is written until a transaction adds it."""
    job_cls = get_job(job) if isinstance(job, str) else job
    return OutboxEntry(
        adapter=job_cls.queue_adapter,
        job_name=job_cls.job_name,
        job_args={"args": list(args), "kwargs": dict(kwargs or {})},
        idempotency_key=idempotency_key,
        run_id=run_id,
    )


class OutboxDispatcher:
    """Forwards committed outbox entries to the live job queue.

    Each entry is claimed, published and marked dispatched inside one
    transaction, so an entry is forwarded from the table at most once per
    committed claim. A crash between publish and commit republishes the
    entry; the message carries the entry id as idempotency key, so the
    downstream job resolves to the same Run.
    """

    def __init__(
        self,
        repository: RunRepository,
        transports: Optional[Mapping[str, BaseTransport]] = None,
        config: Optional[AcidJobConfig] = None,
    ) -> None:
        self._repository = repository
        self._config = config or load_config()
        self._transports: Dict[str, BaseTransport] = dict(transports or {})
        self._connected: set[str] = set()

    async def _transport_for(self, adapter: str) -> BaseTransport:
        adapter = resolve_adapter_name(adapter)
        transport = self._transports.get(adapter)
        if transport is None:
            transport = get_transport(adapter, config=self._config)
            self._transports[adapter] = transport
        if adapter not in self._connected:
            await transport.connect()
            self._connected.add(adapter)
        return transport

    async def dispatch_pending(self, limit: Optional[int] = None) -> int:
        """Forward up to ``limit`` pending entries. Returns how many were sent.

        An entry that cannot be published is counted on its row
        (``attempts``, ``last_error``) and skipped for the rest of the pass,
        so it does not hold back newer entries.
        """
        limit = limit or self._config.outbox.batch_size
        dispatched = 0
        failed: set[str] = set()
        while dispatched + len(failed) < limit:
            entry: Optional[OutboxEntry] = None
            try:
                async with self._repository.transaction() as tx:
                    entries = await tx.pending_outbox_entries(1, exclude=failed)
                    if not entries:
                        break
                    entry = entries[0]
                    transport = await self._transport_for(entry.adapter)
                    message = JobMessage.from_outbox_entry(entry)
                    await transport.publish(entry.job_name, message)
                    await tx.mark_outbox_dispatched(entry.id, utcnow())
            except Exception as exc:
                if entry is None:
                    raise
                # the entry stays pending and is tried again on the next pass
                failed.add(entry.id)
                logger.error(
                    f"Failed to dispatch outbox entry {entry.id} ({entry.job_name}) "
                    f"via {entry.adapter}: {type(exc).__name__}: {exc}"
                )
                async with self._repository.transaction() as tx:
                    await tx.record_outbox_failure(entry.id, f"{type(exc).__name__}: {exc}")
                continue
            dispatched += 1
            logger.info(
                f"Dispatched outbox entry {entry.id} ({entry.job_name}) via {entry.adapter}"
            )
        return dispatched

    async def run(
        self, poll_interval: Optional[float] = None, lifespan: Optional[float] = None
    ) -> None:
        """Poll the outbox until ``lifespan`` seconds have elapsed (forever if None)."""
        poll_interval = poll_interval or self._config.outbox.poll_interval
        loop = asyncio.get_event_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break
            try:
                sent = await self.dispatch_pending()
            except Exception as exc:
                logger.error(f"Outbox dispatch pass failed: {type(exc).__name__}: {exc}")
                sent = 0
            if not sent:
                await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        for adapter in list(self._connected):
            await self._transports[adapter].disconnect()
        self._connected.clear()
