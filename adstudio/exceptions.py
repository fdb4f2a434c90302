"""Shared exceptions for the orchestrator.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from adstudio.models import JobStatus


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents a remote
    call from proceeding (e.g., no API key has been selected yet).
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid status transition on a Job.

    Only the transitions listed in Job.VALID_TRANSITIONS are allowed.

    Attributes:
        from_status: The current JobStatus before the attempted transition.
        to_status: The JobStatus that was attempted but is not valid.

    Example:
        >>> store.merge(job_id, lambda job: {"status": JobStatus.COMPLETED})
        InvalidStateTransitionError: Invalid transition: pending → completed
    """

    def __init__(self, message: str, from_status: "JobStatus", to_status: "JobStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class JobNotFoundError(KeyError):
    """Raised when a job id is not tracked by the state store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class JobStateError(Exception):
    """Raised when a caller operation is not valid for the job's current status.

    Example: retrying a job that has not failed, or extending a job that
    has not completed.
    """

    pass


class RemoteOperationError(Exception):
    """Raised by generation clients when a remote call fails.

    Carries whatever the remote service told us so the error classifier
    can work from status codes as well as message text.

    Attributes:
        status_code: HTTP status code, if the failure came from a response.
        status: Service status string (e.g. "RESOURCE_EXHAUSTED"), if any.
    """

    def __init__(self, message: str, status_code: int | None = None, status: str | None = None):
        self.status_code = status_code
        self.status = status
        super().__init__(message)


class PollTimeoutError(Exception):
    """Raised when a remote operation exceeds its poll-attempt ceiling."""

    def __init__(self, subtask: str, attempts: int):
        self.subtask = subtask
        self.attempts = attempts
        super().__init__(
            f"Remote operation '{subtask}' did not finish after {attempts} poll attempts"
        )
