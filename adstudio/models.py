"""Domain records for the production orchestrator.

Records are frozen dataclasses. The state store replaces a record with a new
one on every merge; nothing mutates a Job in place, so a reader holding an
old record never observes a half-applied update.

Job Lifecycle:
    pending → initiating → polling ⇄ quota_wait → completed | failed
    failed → pending (manual retry)

Terminal States:
    completed, failed (failed can only leave via an explicit retry)
"""

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, ClassVar

from adstudio.constants import PROGRESS_TRACE_LIMIT

if TYPE_CHECKING:
    from adstudio.schemas.job import JobSpec


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class JobStatus(enum.Enum):
    """Lifecycle states of a submitted production job."""

    PENDING = "pending"
    INITIATING = "initiating"
    POLLING = "polling"
    QUOTA_WAIT = "quota_wait"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(enum.Enum):
    """Classification of a failed remote call."""

    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class OperationState(enum.Enum):
    """State of one remote long-running operation."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationKind(enum.Enum):
    """Kinds of remote operation the generation service can start."""

    VIDEO = "video"
    VOICE = "voice"
    EXTEND_VIDEO = "extend_video"


@dataclass(frozen=True)
class RawFailure:
    """A remote failure as reported, before classification.

    Attributes:
        message: Human-readable message from the remote side or the exception.
        status_code: HTTP status code, when known.
        status: Service status string (e.g. "RESOURCE_EXHAUSTED"), when known.
    """

    message: str
    status_code: int | None = None
    status: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RawFailure":
        """Build a RawFailure from any exception. Never raises."""
        status_code = getattr(exc, "status_code", None)
        status = getattr(exc, "status", None)
        message = str(exc) or type(exc).__name__
        return cls(
            message=message,
            status_code=status_code if isinstance(status_code, int) else None,
            status=status if isinstance(status, str) else None,
        )


@dataclass(frozen=True)
class OperationHandle:
    """Opaque reference to a remote long-running task plus poll bookkeeping.

    Attributes:
        remote_ref: Token returned by the generation service (operation name).
            Empty for a sub-task that failed to start.
        kind: Which kind of operation was started.
        poll_attempts: Number of poll calls issued so far.
        last_poll_at: When the latest poll was issued.
        progress_trace: Most recent human-readable notes (bounded).
        state: RUNNING until a terminal outcome is merged.
    """

    remote_ref: str
    kind: OperationKind
    poll_attempts: int = 0
    last_poll_at: datetime | None = None
    progress_trace: tuple[str, ...] = ()
    state: OperationState = OperationState.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.state is not OperationState.RUNNING

    def with_note(self, note: str) -> "OperationHandle":
        """Return a copy with note appended to the bounded progress trace.

        A note equal to the latest entry is not repeated.
        """
        if self.progress_trace and self.progress_trace[-1] == note:
            return self
        trace = (*self.progress_trace, note)[-PROGRESS_TRACE_LIMIT:]
        return replace(self, progress_trace=trace)

    def polled(self, at: datetime) -> "OperationHandle":
        return replace(self, poll_attempts=self.poll_attempts + 1, last_poll_at=at)

    def finished(self, state: OperationState) -> "OperationHandle":
        return replace(self, state=state)


@dataclass(frozen=True)
class RetryState:
    """Retry bookkeeping for one sub-task.

    Transient and quota failures draw on independent budgets.
    """

    transient_retries: int = 0
    quota_retries: int = 0
    next_retry_at: datetime | None = None
    waiting_on_quota: bool = False

    def attempts_for(self, failure_class: FailureClass) -> int:
        if failure_class is FailureClass.QUOTA_EXCEEDED:
            return self.quota_retries
        if failure_class is FailureClass.TRANSIENT:
            return self.transient_retries
        return 0

    def consumed(self, failure_class: FailureClass, next_retry_at: datetime) -> "RetryState":
        """Return a copy with one more retry of failure_class scheduled."""
        if failure_class is FailureClass.QUOTA_EXCEEDED:
            return replace(
                self,
                quota_retries=self.quota_retries + 1,
                next_retry_at=next_retry_at,
                waiting_on_quota=True,
            )
        return replace(
            self,
            transient_retries=self.transient_retries + 1,
            next_retry_at=next_retry_at,
            waiting_on_quota=False,
        )


@dataclass(frozen=True)
class CreativeBrief:
    """Creative direction derived from product facts during initiation."""

    visual_prompt: str
    slogan: str
    voiceover_script: str


@dataclass(frozen=True)
class SubTaskPlan:
    """One named remote sub-task a job must (or may) run.

    Attributes:
        name: Key into Job.operation_handles (e.g. "video", "scene:s1:voice").
        kind: Operation kind passed to the generation capability.
        params: Parameters passed to the generation capability.
        mandatory: Whether the job can complete without this sub-task.
        result_key: Key under which the output is merged into Job.result.
        scene_id: Scene this sub-task renders, None for single-scene jobs.
    """

    name: str
    kind: OperationKind
    params: Mapping[str, Any]
    mandatory: bool
    result_key: str
    scene_id: str | None = None


@dataclass(frozen=True)
class Job:
    """One unit of production work tracked through its lifecycle.

    Mapping fields are replaced wholesale by merges, never edited in place.
    """

    # Allowed status edges. Cancellation is removal, not a transition.
    VALID_TRANSITIONS: ClassVar[dict[JobStatus, frozenset[JobStatus]]] = {
        JobStatus.PENDING: frozenset({JobStatus.INITIATING}),
        JobStatus.INITIATING: frozenset({JobStatus.POLLING, JobStatus.FAILED}),
        JobStatus.POLLING: frozenset(
            {JobStatus.QUOTA_WAIT, JobStatus.COMPLETED, JobStatus.FAILED}
        ),
        JobStatus.QUOTA_WAIT: frozenset({JobStatus.POLLING, JobStatus.FAILED}),
        JobStatus.COMPLETED: frozenset(),
        JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    }

    id: str
    spec: "JobSpec"
    status: JobStatus = JobStatus.PENDING
    plan: tuple[SubTaskPlan, ...] = ()
    brief: CreativeBrief | None = None
    operation_handles: Mapping[str, OperationHandle] = field(default_factory=dict)
    result: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    retry_state: Mapping[str, RetryState] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def plan_ready(self) -> bool:
        return bool(self.plan)

    def subtask(self, name: str) -> SubTaskPlan | None:
        for planned in self.plan:
            if planned.name == name:
                return planned
        return None

    def mandatory_names(self) -> list[str]:
        return [planned.name for planned in self.plan if planned.mandatory]

    def has_running_mandatory(self) -> bool:
        """True if any mandatory sub-task has a non-terminal handle."""
        for name in self.mandatory_names():
            handle = self.operation_handles.get(name)
            if handle is not None and not handle.is_terminal:
                return True
        return False

    def all_mandatory_succeeded(self) -> bool:
        names = self.mandatory_names()
        if not names:
            return False
        return all(
            name in self.operation_handles
            and self.operation_handles[name].state is OperationState.SUCCEEDED
            for name in names
        )

    def retry_for(self, name: str) -> RetryState:
        return self.retry_state.get(name, RetryState())

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in self.VALID_TRANSITIONS.get(self.status, frozenset())

    def __repr__(self) -> str:
        return f"<Job(id={self.id!s:.8}, status={self.status.value!r}, handles={len(self.operation_handles)})>"
