"""Registry of job classes, keyed by job name."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict

from .errors import UnknownJobError

if TYPE_CHECKING:
    from .job import IdempotentJob

logger = logging.getLogger(__name__)

# Workers and the outbox dispatcher resolve job names through this mapping.
# Job classes add themselves when they are declared; a later declaration
# with the same name replaces the earlier one.
JOB_REGISTRY: Dict[str, type["IdempotentJob"]] = {}


def register_job(job_cls: type["IdempotentJob"]) -> None:
    """Add ``job_cls`` to ``JOB_REGISTRY`` under its ``job_name``."""

    name = job_cls.job_name
    previous = JOB_REGISTRY.get(name)
    if previous is not None and previous is not job_cls:
        logger.debug(
            f"Job name {name} re-registered: {previous.__module__} -> {job_cls.__module__}"
        )
    JOB_REGISTRY[name] = job_cls


def get_job(name: str) -> type["IdempotentJob"]:
    """Return the job class registered under ``name``."""
    try:
        return JOB_REGISTRY[name]
    except KeyError:
        raise UnknownJobError(name) from None


__all__ = ["JOB_REGISTRY", "register_job", "get_job"]
