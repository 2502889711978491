from __future__ import annotations


class BatchError(Exception):
    """Base class for every error the batch engine reports as a structured result."""

    code = "batch_error"


class BatchValidationError(BatchError, ValueError):
    code = "validation"


class IllegalTransitionError(BatchError):
    """A state machine refused ``current -> target``."""

    code = "illegal_transition"

    def __init__(self, message: str, *, current: str, target: str) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class NotFoundError(BatchError, LookupError):
    code = "not_found"


class ConflictError(BatchError):
    code = "conflict"

    def __init__(self, message: str, *, active_job_id: str | None = None) -> None:
        super().__init__(message)
        self.active_job_id = active_job_id


class LockTimeoutError(BatchError, TimeoutError):
    """The advisory lock could not be acquired within the wait bound."""

    code = "lock_timeout"

    def __init__(self, message: str, *, lock_path: str, waited_sec: float) -> None:
        super().__init__(message)
        self.lock_path = lock_path
        self.waited_sec = waited_sec


class LeaseHeldError(BatchError):
    """Another runner holds a live lease on the job."""

    code = "lease_held"

    def __init__(self, message: str, *, job_id: str, holder_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.holder_id = holder_id


class BuildFailureError(BatchError):
    code = "build_failure"


class BuildTimeoutError(BuildFailureError):
    code = "build_timeout"
