"""Job worker: consumes job messages and applies the queue-side retry policy."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import AcidJobConfig, load_config
from .contracts import JobMessage, RetryPolicy
from .errors import ConfigurationError, UnknownRecoveryPoint
from .persistence import RunRepository, get_repository
from .registry import get_job
from .transports import BaseTransport
from .utils import retry

logger = logging.getLogger(__name__)


class JobWorker:
    """Executes jobs delivered on a transport topic.

    Delivery is at-least-once: a job that raises is republished with its
    attempt counter bumped until the retry policy gives up, at which point
    the message is dead-lettered. Resuming at the right step is the job's
    business; the worker only redelivers.
    """

    def __init__(
        self,
        transport: BaseTransport,
        job_name: str,
        repository: RunRepository | None = None,
        config: Optional[AcidJobConfig] = None,
    ) -> None:
        self.transport = transport
        self._job_name = job_name
        self._job_cls = get_job(job_name)
        self._config = config or load_config()
        self._repository = repository or get_repository(self._config.database_url)
        self.processed = 0
        self.failed = 0

    def _retry_policy(self) -> RetryPolicy:
        return self._job_cls.retry_policy or self.transport.retry_policy()

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for job messages on the job's topic."""
        logger.info(f"Worker for {self._job_name} listening on {self.transport.name}")
        async for raw_message, message in self.transport.subscribe(
            self._job_name, lifespan=lifespan
        ):
            await self.handle(raw_message, message)

    async def execute(self, message: JobMessage) -> Any:
        """Run the job described by ``message`` once, propagating its errors."""
        job = self._job_cls(
            idempotency_key=message.idempotency_key,
            repository=self._repository,
            config=self._config,
            staged=message.staged,
        )
        return await job.perform_now(*message.args, **message.kwargs)

    async def handle(self, raw_message: Any, message: JobMessage) -> None:
        """Execute one delivery and settle it with the transport."""
        try:
            await self.execute(message)
        except (ConfigurationError, UnknownRecoveryPoint) as exc:
            self.failed += 1
            logger.error(f"Job {message.job_name} cannot run and will not be retried: {exc}")
            await self.transport.nack(raw_message, requeue=False)
            return
        except Exception as exc:
            self.failed += 1
            policy = self._retry_policy()
            if policy.should_retry(message.attempt):
                logger.warning(
                    f"Job {message.job_name} attempt {message.attempt} failed: {exc}; "
                    f"retrying ({message.attempt + 1}/{policy.max_attempts})"
                )
                await retry.schedule_retry(
                    message.attempt, base=policy.backoff_base, jitter=policy.jitter
                )
                await self.transport.publish(message.job_name, message.bump_attempt())
                await self.transport.ack(raw_message)
            else:
                logger.error(
                    f"Job {message.job_name} failed after {message.attempt} attempts: {exc}"
                )
                await self.transport.nack(raw_message, requeue=False)
            return

        self.processed += 1
        await self.transport.ack(raw_message)
        logger.info(f"Job {message.job_name} message {message.message_id} completed")
