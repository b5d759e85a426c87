"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, List, Optional, Tuple

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
    from aiokafka.structs import TopicPartition
except ImportError:  # pragma: no cover - aiokafka not installed
    AIOKafkaConsumer = None  # type: ignore
    AIOKafkaProducer = None  # type: ignore
    TopicPartition = None  # type: ignore

from ..contracts import JobMessage, RetryPolicy
from .base import BaseTransport

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Kafka transport with one topic per job name.

    Records are keyed by idempotency key when there is one, so every
    delivery of the same Run lands on the same partition and is consumed
    in order. Offsets are committed manually on ack.
    """

    name = "kafka"

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "acidjob",
        dlq_topic: str = "acidjob.deadletter",
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if AIOKafkaProducer is None or AIOKafkaConsumer is None:
            raise ImportError("aiokafka package is required for KafkaTransport")

        super().__init__(retry_policy)
        self.brokers: List[str] = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None

    @staticmethod
    def topic_for(job_name: str) -> str:
        return f"acidjob.{job_name}"

    async def connect(self) -> None:
        if self._producer is not None:
            return
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await self._producer.start()
        await self._consumer.start()
        logger.debug(f"Connected to Kafka brokers {self.brokers} as {self.group_id}")

    async def disconnect(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    def _require_connection(self) -> Tuple[AIOKafkaProducer, AIOKafkaConsumer]:
        if self._producer is None or self._consumer is None:
            raise RuntimeError("KafkaTransport not connected")
        return self._producer, self._consumer

    async def publish(self, topic: str, message: JobMessage) -> None:
        producer, _ = self._require_connection()
        key = message.idempotency_key or message.message_id
        await producer.send_and_wait(
            self.topic_for(topic),
            value=message.to_json().encode(),
            key=key.encode(),
            headers=[("attempt", str(message.attempt).encode())],
        )

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, JobMessage]]:
        _, consumer = self._require_connection()
        consumer.subscribe([self.topic_for(topic)])
        loop = asyncio.get_event_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break
            try:
                record = await asyncio.wait_for(consumer.getone(), timeout=1)
            except asyncio.TimeoutError:
                continue
            try:
                message = JobMessage.from_json(record.value.decode())
            except ValueError:
                logger.error(
                    f"Unparseable record {record.topic}[{record.partition}]@{record.offset}"
                )
                await self.nack(record, requeue=False)
                continue
            yield record, message

    async def ack(self, raw_message: Any) -> None:
        _, consumer = self._require_connection()
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        await consumer.commit({tp: raw_message.offset + 1})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        producer, consumer = self._require_connection()
        if requeue:
            consumer.seek(TopicPartition(raw_message.topic, raw_message.partition), raw_message.offset)
            return
        await producer.send_and_wait(
            self.dlq_topic,
            value=raw_message.value,
            key=raw_message.key,
            headers=[("source_topic", raw_message.topic.encode())],
        )
        await self.ack(raw_message)
