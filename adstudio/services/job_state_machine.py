"""Job State Machine: every lifecycle transition of a Job.

All transitions are expressed as merges on the State Store, so each one reads
the current record at application time. The machine never starts timers or
remote calls itself; it returns PollDirective values that tell the Polling
Scheduler what to do next.

State Flow:
    pending → initiating         admission dequeue
    initiating → polling         all mandatory sub-tasks have handles
    initiating → failed          setup or start failure
    polling → quota_wait         mandatory poll hit QUOTA_EXCEEDED, retry scheduled
    quota_wait → polling         next tick after the backoff delay
    polling → completed          every mandatory sub-task succeeded
    polling/quota_wait → failed  GiveUp, terminal remote error, poll ceiling
    failed → pending             manual retry

Idempotency:
    Outcomes for a handle that is already terminal are ignored, so applying
    the same terminal poll result twice leaves the job exactly as once.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from adstudio.constants import (
    INVALID_CREDENTIAL_MESSAGE,
    PROGRESS_DONE_NOTE,
    PROGRESS_NOTES,
    PROGRESS_START_NOTE,
)
from adstudio.exceptions import JobStateError, PollTimeoutError
from adstudio.models import (
    CreativeBrief,
    FailureClass,
    Job,
    JobStatus,
    OperationHandle,
    OperationState,
    RawFailure,
    SubTaskPlan,
    utcnow,
)
from adstudio.services.backoff import BackoffPolicy, GiveUp
from adstudio.services.state_store import JobStore, PartialUpdate
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class PollDirective:
    """What the scheduler should do after a tick.

    Attributes:
        keep_polling: Reschedule the timer for this handle.
        delay: Seconds until the next tick; None means the fixed poll interval.
        job_failed: The job failed on this tick; sibling timers must stop.
    """

    keep_polling: bool
    delay: float | None = None
    job_failed: bool = False


STOP = PollDirective(keep_polling=False)
CONTINUE = PollDirective(keep_polling=True)


def _failure_message(planned: SubTaskPlan, failure_class: FailureClass, detail: str) -> str:
    if failure_class is FailureClass.PERMANENT:
        return f"{INVALID_CREDENTIAL_MESSAGE} ({detail})"
    return f"{planned.kind.value.replace('_', ' ').capitalize()} generation failed: {detail}"


def _failed_update(job: Job, error: str, failed_name: str | None = None) -> PartialUpdate:
    """Fail the job: mark failed_name FAILED, cancel every other running handle."""
    handles = {}
    for name, handle in job.operation_handles.items():
        if name == failed_name and not handle.is_terminal:
            handles[name] = handle.finished(OperationState.FAILED)
        elif not handle.is_terminal:
            handles[name] = handle.finished(OperationState.CANCELLED)
        else:
            handles[name] = handle
    retry_state = {
        name: replace(state, waiting_on_quota=False) for name, state in job.retry_state.items()
    }
    return {
        "status": JobStatus.FAILED,
        "error": error,
        "operation_handles": handles,
        "retry_state": retry_state,
    }


class JobStateMachine:
    """Applies lifecycle transitions to jobs held in a JobStore.

    Args:
        store: The shared State Store.
        policy: Backoff policy consulted when a poll fails.
    """

    def __init__(self, store: JobStore, policy: BackoffPolicy):
        self._store = store
        self._policy = policy

    async def _merge(
        self, job_id: str, fn: Callable[[Job], tuple[PartialUpdate | None, Any]]
    ) -> tuple[Job | None, Any]:
        """Merge fn's update and also hand back fn's verdict."""
        verdict: list[Any] = []

        def apply(job: Job) -> PartialUpdate | None:
            update, outcome = fn(job)
            verdict.append(outcome)
            return update

        job = await self._store.merge(job_id, apply)
        return job, (verdict[0] if verdict else None)

    # Initiation

    async def begin_initiation(self, job_id: str) -> Job | None:
        """Pending → Initiating. Returns None unless the job was Pending."""

        def fn(job: Job):
            if job.status is not JobStatus.PENDING:
                return None, False
            return {"status": JobStatus.INITIATING}, True

        job, started = await self._merge(job_id, fn)
        return job if started else None

    async def record_plan(
        self, job_id: str, brief: CreativeBrief | None, plan: tuple[SubTaskPlan, ...]
    ) -> Job | None:
        """Record the creative brief and sub-task plan ("plan ready")."""

        def fn(job: Job):
            if job.status is not JobStatus.INITIATING:
                return None, False
            return {"brief": brief, "plan": plan}, True

        job, recorded = await self._merge(job_id, fn)
        return job if recorded else None

    async def record_started(self, job_id: str, handles: Mapping[str, OperationHandle]) -> bool:
        """Initiating → Polling once every mandatory sub-task has a handle."""

        def fn(job: Job):
            if job.status is not JobStatus.INITIATING:
                return None, False
            missing = set(job.mandatory_names()) - set(handles)
            if missing:
                raise JobStateError(f"Mandatory sub-tasks not started: {sorted(missing)}")
            merged = dict(job.operation_handles)
            for name, handle in handles.items():
                merged[name] = handle.with_note(PROGRESS_START_NOTE)
            return {"status": JobStatus.POLLING, "operation_handles": merged}, True

        _, applied = await self._merge(job_id, fn)
        if applied:
            log.info("job_polling", job_id=job_id, subtasks=sorted(handles))
        return bool(applied)

    async def record_optional_started(
        self, job_id: str, name: str, handle: OperationHandle
    ) -> bool:
        """Record an optional sub-task's handle whenever its start returns."""

        def fn(job: Job):
            if job.status in (JobStatus.PENDING, JobStatus.FAILED) or name in job.operation_handles:
                return None, False
            handles = {**job.operation_handles, name: handle.with_note(PROGRESS_START_NOTE)}
            return {"operation_handles": handles}, True

        _, applied = await self._merge(job_id, fn)
        return bool(applied)

    async def fail_initiation(self, job_id: str, error: str) -> bool:
        """Initiating → Failed."""

        def fn(job: Job):
            if job.status is not JobStatus.INITIATING:
                return None, False
            return _failed_update(job, error), True

        _, applied = await self._merge(job_id, fn)
        if applied:
            log.warning("job_failed", job_id=job_id, stage="initiation", error=error)
        return bool(applied)

    # Polling

    async def begin_poll(self, job_id: str, name: str) -> OperationHandle | None:
        """Count a poll attempt and leave quota wait if this sub-task caused it.

        Returns:
            The updated handle, or None if the job is gone or the handle is
            already terminal.
        """

        def fn(job: Job):
            handle = job.operation_handles.get(name)
            if handle is None or handle.is_terminal:
                return None, None
            polled = handle.polled(utcnow())
            update: PartialUpdate = {"operation_handles": {**job.operation_handles, name: polled}}

            retry = job.retry_for(name)
            if retry.waiting_on_quota:
                retry_state = {**job.retry_state, name: replace(retry, waiting_on_quota=False)}
                update["retry_state"] = retry_state
                still_waiting = [
                    other
                    for other, state in retry_state.items()
                    if state.waiting_on_quota and other in job.mandatory_names()
                ]
                if job.status is JobStatus.QUOTA_WAIT and not still_waiting:
                    update["status"] = JobStatus.POLLING
            return update, polled

        _, handle = await self._merge(job_id, fn)
        return handle

    async def apply_still_running(self, job_id: str, name: str) -> PollDirective:
        """Remote operation not done yet: append a progress note, keep polling."""

        def fn(job: Job):
            handle = job.operation_handles.get(name)
            if handle is None or handle.is_terminal:
                return None, STOP
            note = PROGRESS_NOTES[(handle.poll_attempts - 1) % len(PROGRESS_NOTES)]
            handles = {**job.operation_handles, name: handle.with_note(note)}
            return {"operation_handles": handles}, CONTINUE

        job, directive = await self._merge(job_id, fn)
        return directive if job is not None else STOP

    async def apply_success(
        self, job_id: str, name: str, output: Mapping[str, Any]
    ) -> PollDirective:
        """Merge a finished sub-task's output; complete the job if it was the last."""
        value = output.get("uri")
        if not value:
            failure = RawFailure("Render completed but no data URI was returned.")
            return await self.apply_remote_error(job_id, name, FailureClass.UNKNOWN, failure)

        def fn(job: Job):
            handle = job.operation_handles.get(name)
            planned = job.subtask(name)
            if handle is None or handle.is_terminal or planned is None:
                return None, False
            done = handle.with_note(PROGRESS_DONE_NOTE).finished(OperationState.SUCCEEDED)
            update: PartialUpdate = {
                "operation_handles": {**job.operation_handles, name: done},
                "result": {**job.result, planned.result_key: value},
            }
            if planned.mandatory and job.status is JobStatus.POLLING:
                if replace(job, **update).all_mandatory_succeeded():
                    update["status"] = JobStatus.COMPLETED
            return update, True

        job, applied = await self._merge(job_id, fn)
        if applied and job is not None:
            log.info(
                "subtask_succeeded",
                job_id=job_id,
                subtask=name,
                job_status=job.status.value,
            )
            if job.status is JobStatus.COMPLETED:
                log.info("job_completed", job_id=job_id, result_keys=sorted(job.result))
        return STOP

    async def apply_remote_error(
        self, job_id: str, name: str, failure_class: FailureClass, failure: RawFailure
    ) -> PollDirective:
        """The remote operation finished with an error: terminal for this sub-task."""
        return await self._terminate(job_id, name, failure_class, failure.message)

    async def apply_timeout(self, job_id: str, name: str, attempts: int) -> PollDirective:
        """Poll ceiling exceeded."""
        detail = str(PollTimeoutError(name, attempts))
        return await self._terminate(job_id, name, FailureClass.UNKNOWN, detail)

    async def apply_unexpected_error(self, job_id: str, name: str, error: str) -> PollDirective:
        return await self._terminate(job_id, name, FailureClass.UNKNOWN, error)

    async def apply_poll_failure(
        self, job_id: str, name: str, failure_class: FailureClass, failure: RawFailure
    ) -> PollDirective:
        """A poll call failed: retry with backoff or give up.

        Quota retries on a mandatory sub-task move the job to QuotaWait;
        the handle is kept, never recreated.
        """

        def fn(job: Job):
            handle = job.operation_handles.get(name)
            planned = job.subtask(name)
            if handle is None or handle.is_terminal or planned is None:
                return None, STOP

            retry = job.retry_for(name)
            decision = self._policy.decide(failure_class, retry.attempts_for(failure_class))
            if isinstance(decision, GiveUp):
                detail = f"{decision.reason}: {failure.message}"
                if failure_class in (FailureClass.PERMANENT, FailureClass.UNKNOWN):
                    detail = failure.message
                return self._terminal_update(job, name, planned, failure_class, detail)

            consumed = retry.consumed(
                failure_class, next_retry_at=utcnow() + timedelta(seconds=decision.after)
            )
            if not planned.mandatory:
                consumed = replace(consumed, waiting_on_quota=False)
            update: PartialUpdate = {"retry_state": {**job.retry_state, name: consumed}}
            if (
                planned.mandatory
                and failure_class is FailureClass.QUOTA_EXCEEDED
                and job.status is JobStatus.POLLING
            ):
                update["status"] = JobStatus.QUOTA_WAIT
            return update, PollDirective(keep_polling=True, delay=decision.after)

        job, directive = await self._merge(job_id, fn)
        if job is None:
            return STOP
        if directive.keep_polling:
            log.info(
                "poll_retry_scheduled",
                job_id=job_id,
                subtask=name,
                failure_class=failure_class.value,
                delay_seconds=directive.delay,
                job_status=job.status.value,
            )
        return directive

    async def _terminate(
        self, job_id: str, name: str, failure_class: FailureClass, detail: str
    ) -> PollDirective:
        def fn(job: Job):
            handle = job.operation_handles.get(name)
            planned = job.subtask(name)
            if handle is None or handle.is_terminal or planned is None:
                return None, STOP
            return self._terminal_update(job, name, planned, failure_class, detail)

        job, directive = await self._merge(job_id, fn)
        return directive if job is not None else STOP

    def _terminal_update(
        self,
        job: Job,
        name: str,
        planned: SubTaskPlan,
        failure_class: FailureClass,
        detail: str,
    ) -> tuple[PartialUpdate, PollDirective]:
        if not planned.mandatory:
            # Optional sub-task: degrade the result, never fail the job
            handle = job.operation_handles[name].with_note(f"Failed: {detail}")
            retry_state = dict(job.retry_state)
            if name in retry_state:
                retry_state[name] = replace(retry_state[name], waiting_on_quota=False)
            log.warning("optional_subtask_dropped", job_id=job.id, subtask=name, error=detail)
            return {
                "operation_handles": {
                    **job.operation_handles,
                    name: handle.finished(OperationState.FAILED),
                },
                "retry_state": retry_state,
            }, STOP

        if job.status not in (JobStatus.POLLING, JobStatus.QUOTA_WAIT):
            handles = {
                **job.operation_handles,
                name: job.operation_handles[name].finished(OperationState.FAILED),
            }
            return {"operation_handles": handles}, STOP

        error = _failure_message(planned, failure_class, detail)
        log.warning(
            "job_failed",
            job_id=job.id,
            subtask=name,
            failure_class=failure_class.value,
            error=error,
        )
        return _failed_update(job, error, failed_name=name), PollDirective(
            keep_polling=False, job_failed=True
        )

    async def record_optional_start_failure(self, job_id: str, name: str, error: str) -> bool:
        """An optional sub-task could not be started; the job continues without it.

        The sub-task gets a FAILED handle with no remote reference, so readers
        can tell a dropped sub-task from one that is still starting.
        """

        def fn(job: Job):
            planned = job.subtask(name)
            if (
                planned is None
                or planned.mandatory
                or job.status in (JobStatus.PENDING, JobStatus.FAILED)
                or name in job.operation_handles
            ):
                return None, False
            dropped = OperationHandle(
                remote_ref="", kind=planned.kind, state=OperationState.FAILED
            ).with_note(f"Failed: {error}")
            return {"operation_handles": {**job.operation_handles, name: dropped}}, True

        _, applied = await self._merge(job_id, fn)
        log.warning("optional_subtask_dropped", job_id=job_id, subtask=name, error=error)
        return bool(applied)

    # Caller actions

    async def reset_for_retry(self, job_id: str) -> Job | None:
        """Failed → Pending with a fresh attempt budget.

        Raises:
            JobStateError: If the job is not Failed.
        """

        def fn(job: Job):
            if job.status is not JobStatus.FAILED:
                raise JobStateError(
                    f"Only failed jobs can be retried (job {job.id} is {job.status.value})"
                )
            return {
                "status": JobStatus.PENDING,
                "plan": (),
                "brief": None,
                "operation_handles": {},
                "result": {},
                "error": None,
                "retry_state": {},
            }, True

        job, _ = await self._merge(job_id, fn)
        if job is not None:
            log.info("job_retry_requested", job_id=job_id)
        return job
