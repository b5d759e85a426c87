"""Message contracts exchanged between acidjob and the job queue."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .persistence.models import OutboxEntry


class RetryPolicy(BaseModel):
    """Redelivery policy applied by the worker when a job raises."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = 1.5
    jitter: float = 0.5

    def should_retry(self, attempt: int) -> bool:
        """Return ``True`` when delivery number ``attempt`` may be followed by another."""
        return attempt < self.max_attempts


class JobMessage(BaseModel):
    """
    Envelope for one job invocation on the queue.

    ``attempt`` counts deliveries starting at 1. ``idempotency_key`` is
    carried verbatim so that redeliveries resolve to the same Run.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_name: str
    adapter: str
    args: List[Any] = Field(default_factory=list)
    kwargs: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    outbox_entry_id: Optional[str] = None
    attempt: int = 1
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def staged(self) -> bool:
        """Whether this message was published by the outbox dispatcher."""
        return self.outbox_entry_id is not None

    def bump_attempt(self) -> "JobMessage":
        """Return a copy for redelivery with a fresh message id."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "attempt": self.attempt + 1,
                "timestamp": datetime.now(timezone.utc),
            }
        )

    @classmethod
    def from_outbox_entry(cls, entry: "OutboxEntry") -> "JobMessage":
        """Build the message announcing a committed outbox entry."""
        return cls(
            message_id=entry.id,
            job_name=entry.job_name,
            adapter=entry.adapter,
            args=list(entry.job_args.get("args", [])),
            kwargs=dict(entry.job_args.get("kwargs", {})),
            idempotency_key=entry.idempotency_key or entry.id,
            outbox_entry_id=entry.id,
        )

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
