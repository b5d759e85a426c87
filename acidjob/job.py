"""Job base class and the declaration surface used inside ``perform``."""

from __future__ import annotations

import logging
import warnings
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .config import AcidJobConfig, load_config
from .contracts import JobMessage, RetryPolicy
from .errors import NoDefinedSteps
from .orchestrator import StepContext, StepOrchestrator
from .outbox import build_outbox_entry
from .persistence import get_repository
from .persistence.models import OutboxEntry, Run
from .persistence.repository import RunRepository
from .registry import register_job
from .resolver import IdempotencyKeyResolver
from .state import WorkingState
from .transports import BaseTransport, get_transport, resolve_adapter_name

logger = logging.getLogger(__name__)

StepRef = Union[str, Any]


def _step_name(step: StepRef) -> str:
    return step if isinstance(step, str) else step.__name__


class StepSequence:
    """Collects step declarations inside ``async with job.with_acidity(...)``.

    The steps run when the block exits without an error. Steps guarded by a
    condition that is false are simply never declared.
    """

    def __init__(
        self,
        job: "IdempotentJob",
        providing: Optional[Mapping[str, Any]] = None,
        staged: Optional[bool] = None,
    ) -> None:
        self._job = job
        self._providing = dict(providing or {})
        self._staged = staged
        self.steps: List[str] = []
        self.run: Optional[Run] = None

    def step(self, step: StepRef) -> "StepSequence":
        """Declare the next step, by method name or bound method."""
        self.steps.append(_step_name(step))
        return self

    async def __aenter__(self) -> "StepSequence":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.run = await self._job._run_steps(self.steps, self._providing, self._staged)
        return False


class IdempotentJob:
    """Base class for jobs whose steps survive crashes and redelivery.

    Subclasses are bound to a queue adapter when the class statement runs::

        class ChargeCustomer(IdempotentJob, queue_adapter="redis"):
            async def perform(self, order_id):
                async with self.with_acidity(providing={"charge_id": None}) as flow:
                    flow.step("create_charge")
                    flow.step("send_receipt")

    The adapter comes from the ``queue_adapter`` keyword, a ``queue_adapter``
    class attribute, or the configured transport backend, in that order.
    """

    job_name: ClassVar[str]
    queue_adapter: ClassVar[Optional[str]] = None
    retry_policy: ClassVar[Optional[RetryPolicy]] = None

    def __init_subclass__(
        cls,
        queue_adapter: Optional[str] = None,
        job_name: Optional[str] = None,
        abstract: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init_subclass__(**kwargs)
        cls.job_name = job_name or cls.__dict__.get("job_name") or cls.__name__
        adapter = queue_adapter or cls.queue_adapter or load_config().transport.backend
        cls.queue_adapter = resolve_adapter_name(adapter)
        if not abstract:
            register_job(cls)

    def __init__(
        self,
        idempotency_key: Optional[str] = None,
        repository: Optional[RunRepository] = None,
        config: Optional[AcidJobConfig] = None,
        staged: bool = False,
    ) -> None:
        self.idempotency_key = idempotency_key
        self.staged = staged
        self.config = config or load_config()
        self.repository = repository or get_repository(self.config.database_url)
        self.arguments: Tuple[Tuple[Any, ...], Dict[str, Any]] = ((), {})
        self.run: Optional[Run] = None
        self.state: Optional[WorkingState] = None

    # ------------------------------------------------------------------
    # Invocation
    async def perform(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError

    async def perform_now(self, *args: Any, **kwargs: Any) -> Any:
        """Run ``perform`` in this process, recording the arguments for key resolution."""
        self.arguments = (args, kwargs)
        return await self.perform(*args, **kwargs)

    @classmethod
    async def perform_later(
        cls,
        *args: Any,
        transport: Optional[BaseTransport] = None,
        **kwargs: Any,
    ) -> JobMessage:
        """Publish an invocation directly to the queue, outside any transaction."""
        message = JobMessage(
            job_name=cls.job_name, adapter=cls.queue_adapter, args=list(args), kwargs=kwargs
        )
        if transport is not None:
            await transport.enqueue(message)
            return message

        transport = get_transport(cls.queue_adapter)
        await transport.connect()
        try:
            await transport.enqueue(message)
        finally:
            await transport.disconnect()
        return message

    @classmethod
    def perform_transactionally(
        cls, ctx: StepContext, *args: Any, **kwargs: Any
    ) -> OutboxEntry:
        """Record an invocation in the outbox of the step that ``ctx`` belongs to."""
        return ctx.enqueue(cls, *args, **kwargs)

    @classmethod
    def outbox_entry(cls, *args: Any, **kwargs: Any) -> OutboxEntry:
        return build_outbox_entry(cls, args, kwargs)

    def idempotency_key_for(
        self, args: Sequence[Any], kwargs: Mapping[str, Any]
    ) -> Optional[str]:
        """Override to derive the idempotency key from the job's arguments."""
        return None

    # ------------------------------------------------------------------
    # Declaration surface
    def with_acidity(self, providing: Optional[Mapping[str, Any]] = None) -> StepSequence:
        """Declare steps for this invocation; they run when the block exits."""
        return StepSequence(self, providing)

    async def idempotently(
        self,
        with_: Optional[Mapping[str, Any]] = None,
        steps: Sequence[StepRef] = (),
    ) -> Run:
        """Older declaration form; same engine, always writes an unstaged Run."""
        warnings.warn(
            "idempotently() is deprecated, use 'async with self.with_acidity(...)'",
            DeprecationWarning,
            stacklevel=2,
        )
        return await self._run_steps([_step_name(s) for s in steps], with_ or {}, False)

    # ------------------------------------------------------------------
    def _orchestrator(self) -> StepOrchestrator:
        return StepOrchestrator(
            self.repository,
            lock_timeout=self.config.locking.timeout_seconds,
            strict_locking=self.config.locking.strict,
        )

    async def _run_steps(
        self,
        steps: Sequence[str],
        providing: Mapping[str, Any],
        staged: Optional[bool],
    ) -> Run:
        if not steps:
            raise NoDefinedSteps(self.job_name)

        args, kwargs = self.arguments
        resolver = IdempotencyKeyResolver(self.repository)
        explicit_key = self.idempotency_key or self.idempotency_key_for(args, kwargs)
        declared = WorkingState(providing).snapshot()
        run, created = await resolver.find_or_create(
            self.job_name,
            args,
            kwargs,
            declared,
            explicit_key=explicit_key,
            staged=self.staged if staged is None else staged,
        )
        if not created:
            logger.info(
                f"Resuming run {run.id} ({self.job_name}) at {run.recovery_point}"
            )
        # keys added to providing= since the Run was created keep their defaults
        self.state = WorkingState.from_snapshot(declared)
        self.state.restore(run.job_args)
        self.run = await self._orchestrator().run(self, run, steps, self.state)
        return self.run
