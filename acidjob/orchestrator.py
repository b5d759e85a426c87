"""Step orchestration for idempotent jobs.

A Run advances one step per transaction. The step body, the new recovery
point, the Working State snapshot and any outbox entries the step produced
are committed together, so a crash between steps leaves the Run at the last
committed step and a redelivered job resumes exactly there.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from .constants import DEFAULT_LOCK_TIMEOUT_SECONDS, FINISHED, STARTED
from .errors import NoDefinedSteps, RunLockedError, UnknownRecoveryPoint, UnknownStepError
from .outbox import JobRef, build_outbox_entry
from .persistence.models import ErrorObject, OutboxEntry, Run, utcnow
from .persistence.repository import RunRepository, RunTransaction
from .state import WorkingState

if TYPE_CHECKING:
    from .job import IdempotentJob

logger = logging.getLogger(__name__)


class FinishRun:
    """Returned by a step body to jump straight to ``FINISHED``."""

    def __repr__(self) -> str:
        return "FinishRun()"


class StepContext:
    """What a step body sees while it runs."""

    def __init__(
        self,
        step_name: str,
        run: Run,
        state: WorkingState,
        transaction: RunTransaction,
    ) -> None:
        self.step_name = step_name
        self.run = run
        self.state = state
        self.transaction = transaction
        self.outbox: List[OutboxEntry] = []

    def enqueue(self, job: JobRef, *args: Any, **kwargs: Any) -> OutboxEntry:
        """Schedule ``job`` to be published once this step commits."""
        entry = build_outbox_entry(job, args, kwargs, run_id=self.run.id)
        self.outbox.append(entry)
        return entry

    def finish(self) -> FinishRun:
        """Mark the Run finished after this step, skipping the remaining steps."""
        return FinishRun()


class StepOrchestrator:
    """Drives a named, ordered step sequence against a Run."""

    def __init__(
        self,
        repository: RunRepository,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        strict_locking: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self.lock_timeout = lock_timeout
        self.strict_locking = strict_locking
        self._clock = clock

    def _resolve_steps(
        self, job: "IdempotentJob", steps: Sequence[str]
    ) -> list[tuple[str, Callable[[StepContext], Any]]]:
        if not steps:
            raise NoDefinedSteps(job.job_name)
        resolved = []
        for name in steps:
            fn = getattr(job, name, None)
            if fn is None or not callable(fn):
                raise UnknownStepError(job.job_name, name)
            resolved.append((name, fn))
        return resolved

    @staticmethod
    def _start_index(run: Run, names: list[str]) -> int:
        if run.recovery_point == STARTED:
            return 0
        try:
            return names.index(run.recovery_point)
        except ValueError:
            logger.error(
                f"Run {run.id} ({run.job_name}) is at unknown recovery point "
                f"{run.recovery_point!r}; refusing to resume"
            )
            raise UnknownRecoveryPoint(run.id, run.recovery_point, names) from None

    async def _lock(self, run: Run) -> Run:
        now = self._clock()
        stale_before = now - timedelta(seconds=self.lock_timeout)
        async with self._repository.transaction() as tx:
            acquired = await tx.try_lock(run.id, now, stale_before)
            if not acquired:
                current = await tx.get_run(run.id) or run
                if self.strict_locking:
                    raise RunLockedError(run.id, current.locked_at)
                logger.warning(
                    f"Run {run.id} ({run.job_name}) already locked at "
                    f"{current.locked_at}; proceeding"
                )
                # only the lock columns change; progress stays as stored
                await tx.save_run(
                    current.model_copy(
                        update={"locked_at": now, "last_run_at": now, "updated_at": now}
                    )
                )
            locked = await tx.get_run(run.id)
        return locked

    async def _record_failure(self, run: Run, exc: BaseException) -> None:
        now = self._clock()
        async with self._repository.transaction() as tx:
            current = await tx.get_run(run.id) or run
            await tx.save_run(
                current.model_copy(
                    update={
                        "error_object": ErrorObject.from_exception(exc),
                        "locked_at": None,
                        "last_run_at": now,
                        "updated_at": now,
                    }
                )
            )

    async def _finish(self, run: Run) -> Run:
        now = self._clock()
        async with self._repository.transaction() as tx:
            finished = run.model_copy(
                update={"locked_at": None, "last_run_at": now, "updated_at": now}
            )
            await tx.save_run(finished)
        return finished

    @staticmethod
    async def _invoke(fn: Callable[[StepContext], Any], ctx: StepContext) -> Any:
        result = fn(ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(
        self,
        job: "IdempotentJob",
        run: Run,
        steps: Sequence[str],
        state: Optional[WorkingState] = None,
    ) -> Run:
        """Execute ``steps`` from the Run's recovery point onward.

        Step errors are recorded on the Run and re-raised unchanged. Nothing
        is retried here; a redelivered job simply calls this again.
        """
        resolved = self._resolve_steps(job, steps)
        names = [name for name, _ in resolved]
        state = state if state is not None else WorkingState.from_snapshot(run.job_args)

        if run.finished:
            logger.info(f"Run {run.id} ({run.job_name}) already finished; nothing to do")
            return run

        self._start_index(run, names)
        locked = await self._lock(run)
        if locked.recovery_point != run.recovery_point:
            logger.info(
                f"Run {run.id} ({run.job_name}) moved from {run.recovery_point} "
                f"to {locked.recovery_point} before it was locked"
            )
        # resume from the row as stored, not the copy handed in
        run = locked
        state.restore(run.job_args)
        if run.finished:
            return await self._finish(run)
        try:
            start = self._start_index(run, names)
        except UnknownRecoveryPoint as exc:
            await self._record_failure(run, exc)
            raise

        for index in range(start, len(resolved)):
            name, fn = resolved[index]
            try:
                async with self._repository.transaction() as tx:
                    ctx = StepContext(name, run, state, tx)
                    result = await self._invoke(fn, ctx)
                    last = index == len(resolved) - 1
                    next_point = (
                        FINISHED if last or isinstance(result, FinishRun) else names[index + 1]
                    )
                    for entry in ctx.outbox:
                        await tx.add_outbox_entry(entry)
                    advanced = run.model_copy(
                        update={
                            "recovery_point": next_point,
                            "job_args": state.snapshot(),
                            "error_object": None,
                            "updated_at": self._clock(),
                        }
                    )
                    await tx.save_run(advanced)
            except BaseException as exc:
                # cancellation (e.g. a wait_for timeout) is recorded too
                logger.error(
                    f"Step {name} of run {run.id} ({run.job_name}) failed: "
                    f"{type(exc).__name__}: {exc}"
                )
                try:
                    await self._record_failure(run, exc)
                except Exception as record_exc:
                    logger.error(
                        f"Could not record failure on run {run.id}: {record_exc}"
                    )
                raise

            run = advanced
            logger.info(
                f"Step {name} of run {run.id} ({run.job_name}) committed; "
                f"next={next_point} outbox={len(ctx.outbox)}"
            )
            if next_point == FINISHED:
                break

        run = await self._finish(run)
        logger.info(f"Run {run.id} ({run.job_name}) finished")
        return run
