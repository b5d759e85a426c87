"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import JobMessage, RetryPolicy
from .base import BaseTransport

# (serialized payload, decoded message)
InMemoryRaw = Tuple[str, JobMessage]


class InMemoryTransport(BaseTransport[InMemoryRaw]):
    """Per-topic deques inside the running event loop.

    Acknowledged messages are kept in ``acked`` and rejected ones in
    ``dead_letters`` so tests can inspect how deliveries were settled.
    """

    name = "inmemory"

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        super().__init__(retry_policy)
        self._queues: Dict[str, Deque[InMemoryRaw]] = defaultdict(deque)
        self._wakeups: Dict[str, asyncio.Event] = {}
        self.acked: List[JobMessage] = []
        self.dead_letters: List[JobMessage] = []

    def _wakeup(self, topic: str) -> asyncio.Event:
        if topic not in self._wakeups:
            self._wakeups[topic] = asyncio.Event()
        return self._wakeups[topic]

    async def publish(self, topic: str, message: JobMessage) -> None:
        self._queues[topic].append((message.to_json(), message))
        self._wakeup(topic).set()

    def pending(self, topic: str) -> List[JobMessage]:
        """Messages waiting on ``topic``."""
        return [message for _, message in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InMemoryRaw, JobMessage]]:
        """Yield messages published on ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_event_loop()
        deadline = loop.time() + lifespan if lifespan else None
        queue = self._queues[topic]
        wakeup = self._wakeup(topic)

        while True:
            if deadline is not None and loop.time() >= deadline:
                break
            if queue:
                raw_message = queue.popleft()
                yield raw_message, raw_message[1]
                continue

            wakeup.clear()
            timeout = 0.1 if deadline is None else max(0.0, min(0.1, deadline - loop.time()))
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def ack(self, raw_message: InMemoryRaw) -> None:
        self.acked.append(raw_message[1])

    async def nack(self, raw_message: InMemoryRaw, requeue: bool = True) -> None:
        """Requeue the message or park it in ``dead_letters``."""
        _, message = raw_message
        if requeue:
            await self.publish(message.job_name, message)
        else:
            self.dead_letters.append(message)
