"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AcidJobConfig, load_config
from ..constants import KNOWN_QUEUE_ADAPTERS
from ..errors import UnknownJobAdapter
from .base import BaseTransport
from .inmemory import InMemoryTransport


def resolve_adapter_name(name: Optional[str]) -> str:
    """Normalise ``name`` and check it against the known queue adapters."""
    if not name or name.lower() not in KNOWN_QUEUE_ADAPTERS:
        raise UnknownJobAdapter(name, KNOWN_QUEUE_ADAPTERS)
    return name.lower()


def get_transport(
    backend: Optional[str] = None, config: Optional[AcidJobConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = resolve_adapter_name(
        backend or os.getenv("ACIDJOB_TRANSPORT") or config.transport.backend
    )
    retry = config.transport.retry

    if backend == "inmemory":
        return InMemoryTransport(retry_policy=retry)
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            retry_policy=retry,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(config.transport.rabbitmq.url, retry_policy=retry)
    else:
        from .kafka import KafkaTransport

        kafka_conf = config.transport.kafka
        return KafkaTransport(
            brokers=kafka_conf.brokers,
            group_id=kafka_conf.group_id,
            dlq_topic=kafka_conf.dlq_topic,
            retry_policy=retry,
        )


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "resolve_adapter_name"]
