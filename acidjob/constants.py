"""Shared constants for acidjob."""

STARTED = "STARTED"
FINISHED = "FINISHED"

DEFAULT_QUEUE_ADAPTER = "inmemory"
KNOWN_QUEUE_ADAPTERS = ("inmemory", "redis", "rabbitmq", "kafka")

DEFAULT_LOCK_TIMEOUT_SECONDS = 60 * 60
DEFAULT_OUTBOX_BATCH_SIZE = 100
DEFAULT_OUTBOX_POLL_INTERVAL = 1.0
