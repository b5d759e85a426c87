"""
Exceptions raised by the acidjob engine.

Configuration errors are fatal and never stored on a Run. Errors raised by
step bodies are not wrapped: they are recorded on the Run and re-raised as is.
"""


class AcidJobError(Exception):
    """Base exception for all acidjob errors."""
    pass


class ConfigurationError(AcidJobError):
    """Raised when a job or the engine is set up incorrectly."""
    pass


class NoDefinedSteps(ConfigurationError):
    """Raised when a job reaches orchestration without any declared step."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"No steps defined for job {job_name}")


class UnknownJobAdapter(ConfigurationError):
    """Raised when a job class is bound to a queue adapter that does not exist."""

    def __init__(self, adapter: str | None, known: tuple[str, ...] = ()):
        self.adapter = adapter
        self.known = known
        message = f"Unknown job adapter: {adapter!r}"
        if known:
            message += f" (expected one of: {', '.join(known)})"
        super().__init__(message)


class UnknownStepError(ConfigurationError):
    """Raised when a declared step name does not resolve to a callable on the job."""

    def __init__(self, job_name: str, step_name: str):
        self.job_name = job_name
        self.step_name = step_name
        super().__init__(f"Job {job_name} has no step named {step_name!r}")


class UnknownJobError(ConfigurationError):
    """Raised when a job name is not present in the job registry."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Job not registered: {job_name}")


class UnknownRecoveryPoint(AcidJobError):
    """
    Raised when a Run's recovery point matches no step of the sequence.

    The Run is not resumed from the start; this is treated as corruption.
    """

    def __init__(self, run_id: str, recovery_point: str, steps: list[str]):
        self.run_id = run_id
        self.recovery_point = recovery_point
        self.steps = steps
        super().__init__(
            f"Run {run_id} has recovery point {recovery_point!r} "
            f"which is not one of {steps}"
        )


class RunLockedError(AcidJobError):
    """Raised under strict locking when another attempt holds the Run."""

    def __init__(self, run_id: str, locked_at):
        self.run_id = run_id
        self.locked_at = locked_at
        super().__init__(f"Run {run_id} is locked since {locked_at}")


class RunNotFoundError(AcidJobError):
    """Raised when a requested Run does not exist."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class DuplicateRunError(AcidJobError):
    """Raised by a repository when inserting a Run violates its unique key."""

    def __init__(self, idempotency_key: str, job_name: str):
        self.idempotency_key = idempotency_key
        self.job_name = job_name
        super().__init__(
            f"Run already exists for job {job_name} with key {idempotency_key}"
        )


class UndeclaredAttributeError(AcidJobError, AttributeError):
    """Raised when a step touches a Working State attribute that was never declared."""

    def __init__(self, name: str, declared: list[str]):
        self.name = name
        self.declared = declared
        super().__init__(
            f"Working state has no declared attribute {name!r} (declared: {declared})"
        )
