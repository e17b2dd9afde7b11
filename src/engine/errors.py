"""
Execution core exceptions.

Every error carries the structured fields needed to reconstruct the
timeline (job id, execution id, phase, cause) in addition to its message.
"""

from typing import Optional


class EngineError(Exception):
    """Base exception for all execution core errors."""
    pass


class RejectedError(EngineError):
    """
    Raised when a precondition fails synchronously.

    Examples:
    - Triggering an inactive or unknown job
    - Unsatisfied BLOCKING dependency
    - Duplicate job/schedule link or dependency edge

    A rejection never creates a RUNNING execution.
    """

    def __init__(self, reason: str, job_id: Optional[str] = None):
        self.reason = reason
        self.job_id = job_id
        message = f"Rejected: {reason}"
        if job_id is not None:
            message += f" (job={job_id})"
        super().__init__(message)


class DependencyCycleError(RejectedError):
    """Raised when a new dependency edge would close a cycle."""

    def __init__(self, dependent_job_id: str, prerequisite_job_id: str):
        self.dependent_job_id = dependent_job_id
        self.prerequisite_job_id = prerequisite_job_id
        super().__init__(
            f"dependency {dependent_job_id} -> {prerequisite_job_id} would create a cycle",
            job_id=dependent_job_id,
        )


class JobNotFoundError(EngineError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ScheduleNotFoundError(EngineError):
    """Raised when a requested schedule does not exist."""

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


class ExecutionNotFoundError(EngineError):
    """Raised when a requested execution does not exist."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidTransitionError(EngineError):
    """
    Raised when a lifecycle transition is not valid from the current state.

    Terminal states are immutable, so any second complete/fail/cancel on the
    same execution ends here.
    """

    def __init__(self, execution_id: str, current_status: str, target_status: str):
        self.execution_id = execution_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid transition for execution {execution_id}: "
            f"{current_status} -> {target_status}"
        )


class LockContentionError(EngineError):
    """
    Raised when another live holder owns the job's execution lock.

    Recoverable: the controller applies its contention policy.
    """

    def __init__(self, job_id: str, holder: str, current_holder: Optional[str] = None):
        self.job_id = job_id
        self.holder = holder
        self.current_holder = current_holder
        super().__init__(
            f"concurrent execution in progress for job {job_id} "
            f"(requested by {holder}, held by {current_holder or 'unknown'})"
        )


class StorageError(EngineError):
    """
    Raised when a record cannot be read or persisted.

    Fatal to the current attempt.
    """

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage failure during {operation}: {cause}")


class RunnerFailure(EngineError):
    """Raised by runners when the job body fails. Recorded as FAILED, never retried."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ):
        self.job_id = job_id
        self.execution_id = execution_id
        super().__init__(message)


class RunnerNotFoundError(EngineError):
    """Raised when no runner is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No runner registered for job type: {job_type}")


class ExecutionCancelledError(EngineError):
    """Raised by a runner that observed its cancellation token."""

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        super().__init__(f"Execution cancelled: {execution_id or 'unknown'}")
