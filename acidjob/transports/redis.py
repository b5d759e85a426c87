"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import JobMessage, RetryPolicy
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, payload) as popped from the queue list
RedisRaw = Tuple[str, str]


class RedisTransport(BaseTransport[RedisRaw]):
    """Reliable-queue transport on Redis lists.

    A consumed payload is moved atomically onto ``acidjob:<topic>:processing``
    and only removed from there on ack, so a worker crash between pop and
    ack leaves the job recoverable instead of lost. Rejected payloads land on
    ``acidjob:<topic>:deadletter``.
    """

    name = "redis"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        super().__init__(retry_policy)
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.debug(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_key(topic: str, suffix: Optional[str] = None) -> str:
        key = f"acidjob:{topic}"
        return f"{key}:{suffix}" if suffix else key

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, message: JobMessage) -> None:
        client = await self._client()
        await client.lpush(self.queue_key(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisRaw, JobMessage]]:
        client = await self._client()
        queue = self.queue_key(topic)
        processing = self.queue_key(topic, "processing")
        loop = asyncio.get_event_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            payload = await client.blmove(queue, processing, timeout=1, src="RIGHT", dest="LEFT")
            if payload is None:
                continue
            raw = (topic, payload)
            try:
                message = JobMessage.from_json(payload)
            except ValueError as e:
                logger.error(f"Unparseable payload on {queue}, dead-lettering: {e}")
                await self.nack(raw, requeue=False)
                continue
            yield raw, message

    async def ack(self, raw_message: RedisRaw) -> None:
        topic, payload = raw_message
        client = await self._client()
        await client.lrem(self.queue_key(topic, "processing"), 1, payload)

    async def nack(self, raw_message: RedisRaw, requeue: bool = True) -> None:
        topic, payload = raw_message
        client = await self._client()
        target = self.queue_key(topic) if requeue else self.queue_key(topic, "deadletter")
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.queue_key(topic, "processing"), 1, payload)
            pipe.lpush(target, payload)
            await pipe.execute()
