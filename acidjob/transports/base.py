"""Base transport interface for acidjob job queues."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobMessage, RetryPolicy

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for job queue adapters.

    Besides moving messages, a transport answers the retry policy the worker
    applies to jobs delivered through it.
    """

    name: str = "base"

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        self._retry_policy = retry_policy or RetryPolicy()

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    def retry_policy(self) -> RetryPolicy:
        """Redelivery policy for jobs consumed from this transport."""
        return self._retry_policy

    async def enqueue(self, message: JobMessage) -> None:
        """Publish ``message`` on the topic named after its job."""
        await self.publish(message.job_name, message)

    @abc.abstractmethod
    async def publish(self, topic: str, message: JobMessage) -> None:
        """Send a message to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobMessage]]:
        """Yield raw transport message and JobMessage pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
