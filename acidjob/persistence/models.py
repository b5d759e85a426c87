"""Data models for persisted Run and Outbox state."""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import FINISHED, STARTED


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ErrorObject(BaseModel):
    """Serialized exception captured on a failed Run."""

    class_name: str
    module: str
    message: str
    backtrace: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorObject":
        exc_type = type(exc)
        return cls(
            class_name=exc_type.__qualname__,
            module=exc_type.__module__,
            message=str(exc),
            backtrace="".join(
                traceback.format_exception(exc_type, exc, exc.__traceback__)
            ),
        )

    @property
    def qualified_name(self) -> str:
        return f"{self.module}.{self.class_name}"

    def matches(self, exc_type: type[BaseException]) -> bool:
        """Return ``True`` if the captured error was raised as ``exc_type``."""
        return (
            self.class_name == exc_type.__qualname__
            and self.module == exc_type.__module__
        )


class Run(BaseModel):
    """Persisted state of one logical idempotent job execution."""

    id: str = Field(default_factory=new_id)
    idempotency_key: str
    job_name: str
    args_fingerprint: str
    job_args: dict[str, Any] = Field(default_factory=dict)
    recovery_point: str = STARTED
    locked_at: Optional[datetime] = None
    last_run_at: datetime = Field(default_factory=utcnow)
    error_object: Optional[ErrorObject] = None
    staged: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def finished(self) -> bool:
        return self.recovery_point == FINISHED

    @property
    def failed(self) -> bool:
        return self.error_object is not None

    @property
    def locked(self) -> bool:
        return self.locked_at is not None

    def is_lock_stale(self, timeout: float, now: Optional[datetime] = None) -> bool:
        """Return ``True`` if the Run is locked for longer than ``timeout`` seconds."""
        if self.locked_at is None:
            return False
        now = now or utcnow()
        return now - self.locked_at > timedelta(seconds=timeout)


class OutboxEntry(BaseModel):
    """A follow-on job recorded in the producing step's transaction."""

    id: str = Field(default_factory=new_id)
    adapter: str
    job_name: str
    job_args: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    dispatched_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.dispatched_at is None
