"""acidjob: crash-safe, idempotent step execution for background jobs."""

from .constants import FINISHED, STARTED
from .contracts import JobMessage, RetryPolicy
from .errors import (
    AcidJobError,
    ConfigurationError,
    NoDefinedSteps,
    RunLockedError,
    UndeclaredAttributeError,
    UnknownJobAdapter,
    UnknownRecoveryPoint,
    UnknownStepError,
)
from .job import IdempotentJob, StepSequence
from .orchestrator import FinishRun, StepContext, StepOrchestrator
from .outbox import OutboxDispatcher
from .persistence import Run, get_repository
from .registry import JOB_REGISTRY
from .resolver import IdempotencyKeyResolver
from .state import WorkingState
from .transports import get_transport
from .worker import JobWorker

__version__ = "0.1.0"
__all__ = [
    "FINISHED",
    "STARTED",
    "AcidJobError",
    "ConfigurationError",
    "NoDefinedSteps",
    "RunLockedError",
    "UndeclaredAttributeError",
    "UnknownJobAdapter",
    "UnknownRecoveryPoint",
    "UnknownStepError",
    "FinishRun",
    "IdempotencyKeyResolver",
    "IdempotentJob",
    "JobMessage",
    "JobWorker",
    "OutboxDispatcher",
    "RetryPolicy",
    "Run",
    "StepContext",
    "StepOrchestrator",
    "StepSequence",
    "WorkingState",
    "get_repository",
    "get_transport",
    "JOB_REGISTRY",
]
