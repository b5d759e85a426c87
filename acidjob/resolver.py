"""Idempotency key derivation and Run lookup."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Mapping, Optional, Sequence, Tuple

from pydantic_core import to_jsonable_python

from .errors import DuplicateRunError, RunNotFoundError
from .persistence.models import Run
from .persistence.repository import RunRepository

logger = logging.getLogger(__name__)


def canonical_json(value: Any) -> str:
    return json.dumps(
        to_jsonable_python(value), sort_keys=True, separators=(",", ":")
    )


def args_fingerprint(args: Sequence[Any], kwargs: Mapping[str, Any]) -> str:
    """Stable digest of a job's positional and keyword arguments."""
    payload = canonical_json({"args": list(args), "kwargs": dict(kwargs)})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def derive_idempotency_key(job_name: str, fingerprint: str) -> str:
    return hashlib.sha256(f"{job_name}:{fingerprint}".encode("utf-8")).hexdigest()


class IdempotencyKeyResolver:
    """Maps a job invocation onto its unique Run."""

    def __init__(self, repository: RunRepository) -> None:
        self._repository = repository

    def resolve_key(
        self,
        job_name: str,
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        explicit_key: Optional[str] = None,
    ) -> str:
        if explicit_key:
            return explicit_key
        return derive_idempotency_key(job_name, args_fingerprint(args, kwargs))

    async def find_or_create(
        self,
        job_name: str,
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        working_state: Mapping[str, Any],
        explicit_key: Optional[str] = None,
        staged: bool = False,
    ) -> Tuple[Run, bool]:
        """Return the Run for this invocation and whether it was just created.

        A concurrent creator winning the race on the unique key is not an
        error: the row it inserted is loaded and returned instead.
        """
        fingerprint = args_fingerprint(args, kwargs)
        key = self.resolve_key(job_name, args, kwargs, explicit_key)

        try:
            async with self._repository.transaction() as tx:
                existing = await tx.find_run(key, job_name, fingerprint)
                if existing is not None:
                    return existing, False
                run = Run(
                    idempotency_key=key,
                    job_name=job_name,
                    args_fingerprint=fingerprint,
                    job_args=dict(working_state),
                    staged=staged,
                )
                await tx.insert_run(run)
        except DuplicateRunError:
            logger.info(f"Run for {job_name} key={key} created concurrently; loading it")
            async with self._repository.transaction() as tx:
                existing = await tx.find_run(key, job_name, fingerprint)
            if existing is None:
                raise RunNotFoundError(key)
            return existing, False

        logger.info(f"Created run {run.id} for {job_name} key={key}")
        return run, True
