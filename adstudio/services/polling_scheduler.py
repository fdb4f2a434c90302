"""Polling Scheduler: one timer per running remote operation.

Each timer is an asyncio task keyed by (job_id, subtask). A tick reads the
job's current record, polls the remote operation, and hands the outcome to
the Job State Machine, which answers with a PollDirective (reschedule after
the fixed interval, reschedule after a backoff delay, or stop).

Invariants:
    - At most one timer per (job_id, subtask); scheduling a live key is a no-op
    - A removed job never receives a merge: every tick re-checks the store
      after its await, and removal cancels the job's timers first
    - When a job fails, the timers for its other sub-tasks are cancelled and
      their handles released

Usage:
    scheduler = PollingScheduler(store, machine, capability, classifier,
                                 interval=10.0, max_poll_attempts=90)
    scheduler.schedule(job_id, "video")
"""

import asyncio
from collections.abc import Awaitable, Callable

from adstudio.clients.base import GenerationCapability
from adstudio.models import FailureClass, Job, OperationState, RawFailure
from adstudio.services.job_state_machine import STOP, JobStateMachine, PollDirective
from adstudio.services.state_store import JobStore
from adstudio.utils.logging import get_logger

log = get_logger(__name__)

TimerKey = tuple[str, str]


class PollingScheduler:
    """Owns the poll timers for every running operation handle.

    Args:
        store: Shared State Store.
        machine: Transition logic for poll outcomes.
        capability: Generation service used for poll calls.
        classify: Failure classifier (fires credential refresh on PERMANENT).
        interval: Fixed delay between polls of a still-running operation.
        max_poll_attempts: Poll ceiling per handle before the job times out.
        sleep: Awaitable delay; injectable so tests run without wall-clock time.
    """

    def __init__(
        self,
        store: JobStore,
        machine: JobStateMachine,
        capability: GenerationCapability,
        classify: Callable[[RawFailure], FailureClass],
        *,
        interval: float,
        max_poll_attempts: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._machine = machine
        self._capability = capability
        self._classify = classify
        self._interval = interval
        self._max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self._timers: dict[TimerKey, asyncio.Task[None]] = {}

    def schedule(self, job_id: str, name: str, delay: float | None = None) -> bool:
        """Start the poll timer for a sub-task.

        Returns:
            False if a live timer already exists for (job_id, name).
        """
        key = (job_id, name)
        existing = self._timers.get(key)
        if existing is not None and not existing.done():
            log.debug("poll_timer_already_scheduled", job_id=job_id, subtask=name)
            return False

        first_delay = self._interval if delay is None else delay
        task = asyncio.create_task(
            self._run(job_id, name, first_delay), name=f"poll:{job_id}:{name}"
        )
        self._timers[key] = task
        task.add_done_callback(lambda finished, key=key: self._on_done(key, finished))
        log.debug("poll_timer_scheduled", job_id=job_id, subtask=name, delay_seconds=first_delay)
        return True

    def is_scheduled(self, job_id: str, name: str) -> bool:
        task = self._timers.get((job_id, name))
        return task is not None and not task.done()

    def active_count(self) -> int:
        return sum(1 for task in self._timers.values() if not task.done())

    def cancel_job(self, job_id: str) -> int:
        """Cancel every timer of a job except the one currently running this call.

        Returns:
            Number of timers cancelled.
        """
        current = asyncio.current_task()
        cancelled = 0
        for key in [key for key in self._timers if key[0] == job_id]:
            task = self._timers[key]
            if task is current:
                continue
            self._timers.pop(key, None)
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            log.info("poll_timers_cancelled", job_id=job_id, count=cancelled)
        return cancelled

    def release_job(self, job: Job) -> None:
        """Release every handle of a job that will not be polled again."""
        for handle in job.operation_handles.values():
            if handle.remote_ref and handle.state is not OperationState.SUCCEEDED:
                self._capability.release_operation(handle)

    async def aclose(self) -> None:
        """Cancel all timers and wait for them to unwind."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, key: TimerKey, task: "asyncio.Task[None]") -> None:
        if self._timers.get(key) is task:
            self._timers.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            log.error(
                "poll_timer_crashed",
                job_id=key[0],
                subtask=key[1],
                error=str(task.exception()),
            )

    async def _run(self, job_id: str, name: str, delay: float) -> None:
        while True:
            await self._sleep(delay)
            try:
                directive = await self._tick(job_id, name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("poll_tick_failed", job_id=job_id, subtask=name, exc_info=True)
                directive = await self._machine.apply_unexpected_error(
                    job_id, name, str(exc) or type(exc).__name__
                )

            if directive.job_failed:
                self.cancel_job(job_id)
                failed = self._store.get(job_id)
                if failed is not None:
                    self.release_job(failed)
            if not directive.keep_polling:
                return
            delay = self._interval if directive.delay is None else directive.delay

    async def _tick(self, job_id: str, name: str) -> PollDirective:
        job = self._store.get(job_id)
        if job is None:
            return STOP
        handle = job.operation_handles.get(name)
        if handle is None or handle.is_terminal:
            return STOP

        if handle.poll_attempts >= self._max_poll_attempts:
            log.warning(
                "poll_ceiling_reached",
                job_id=job_id,
                subtask=name,
                attempts=handle.poll_attempts,
            )
            return await self._machine.apply_timeout(job_id, name, handle.poll_attempts)

        handle = await self._machine.begin_poll(job_id, name)
        if handle is None:
            return STOP

        try:
            outcome = await self._capability.poll_operation(handle)
        except Exception as exc:
            if job_id not in self._store:
                return STOP
            failure = RawFailure.from_exception(exc)
            return await self._machine.apply_poll_failure(
                job_id, name, self._classify(failure), failure
            )

        if job_id not in self._store:
            log.info("poll_result_discarded", job_id=job_id, subtask=name)
            return STOP

        if not outcome.done:
            return await self._machine.apply_still_running(job_id, name)
        if outcome.failure is not None:
            return await self._machine.apply_remote_error(
                job_id, name, self._classify(outcome.failure), outcome.failure
            )
        return await self._machine.apply_success(job_id, name, outcome.output or {})
