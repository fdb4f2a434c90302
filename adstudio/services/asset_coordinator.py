"""Asset Generation Coordinator: starts the sub-tasks of a planned job.

Mandatory sub-tasks are started concurrently and the job moves to Polling
only when all of them hold a handle. Optional sub-tasks run in the
background: their handle is merged whenever it arrives, and a failure to
start one drops it without failing the job.

Every start call is guarded by a PolicyRetryController, so transient and
quota failures back off per the BackoffPolicy while permanent ones give up
at once.

Architecture Pattern:
    asyncio.gather over mandatory starts (cancel the rest on first failure)
    background tasks for optional starts, tracked per job for cancellation
"""

import asyncio
from collections.abc import Awaitable, Callable

from adstudio.clients.base import GenerationCapability
from adstudio.constants import INVALID_CREDENTIAL_MESSAGE
from adstudio.models import FailureClass, Job, OperationHandle, RawFailure, SubTaskPlan
from adstudio.services.backoff import BackoffPolicy, PolicyRetryController
from adstudio.services.job_state_machine import JobStateMachine
from adstudio.services.polling_scheduler import PollingScheduler
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


class SubTaskStartError(Exception):
    """A sub-task could not be started after its retry budget.

    Attributes:
        subtask: Name of the sub-task.
        failure_class: Classification of the last failure.
    """

    def __init__(self, subtask: str, failure_class: FailureClass, message: str):
        self.subtask = subtask
        self.failure_class = failure_class
        super().__init__(message)


class AssetGenerationCoordinator:
    """Fans a job's plan out into remote operations."""

    def __init__(
        self,
        machine: JobStateMachine,
        scheduler: PollingScheduler,
        capability: GenerationCapability,
        classify: Callable[[RawFailure], FailureClass],
        policy: BackoffPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._machine = machine
        self._scheduler = scheduler
        self._capability = capability
        self._classify = classify
        self._policy = policy
        self._sleep = sleep
        self._optional_tasks: dict[str, set[asyncio.Task[None]]] = {}

    async def launch(self, job: Job) -> bool:
        """Start every sub-task of a planned job.

        Returns:
            True if the job moved to Polling, False if it was cancelled or
            reset while starting.

        Raises:
            SubTaskStartError: If a mandatory sub-task could not be started.
        """
        mandatory = [planned for planned in job.plan if planned.mandatory]
        optional = [planned for planned in job.plan if not planned.mandatory]

        for planned in optional:
            task = asyncio.create_task(
                self._start_optional(job.id, planned), name=f"start:{job.id}:{planned.name}"
            )
            tasks = self._optional_tasks.setdefault(job.id, set())
            tasks.add(task)
            task.add_done_callback(lambda done, job_id=job.id: self._forget(job_id, done))

        starts = [
            asyncio.create_task(
                self.start(job.id, planned), name=f"start:{job.id}:{planned.name}"
            )
            for planned in mandatory
        ]
        try:
            handles = await asyncio.gather(*starts)
        except BaseException:
            for task in starts:
                task.cancel()
            await asyncio.gather(*starts, return_exceptions=True)
            raise

        started = await self._machine.record_started(
            job.id, {planned.name: handle for planned, handle in zip(mandatory, handles)}
        )
        if not started:
            log.info("job_start_discarded", job_id=job.id)
            return False

        for planned in mandatory:
            self._scheduler.schedule(job.id, planned.name)
        return True

    async def start(self, job_id: str, planned: SubTaskPlan) -> OperationHandle:
        """Start one remote operation, retrying per the backoff policy.

        Raises:
            SubTaskStartError: When the policy gives up.
        """
        controller = PolicyRetryController(
            self._policy, self._classify, label=f"start:{planned.name}", sleep=self._sleep
        )
        try:
            async for attempt in controller.retrying():
                with attempt:
                    handle = await self._capability.start_operation(planned.kind, planned.params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure_class = controller.last_class or FailureClass.UNKNOWN
            message = f"Could not start {planned.name}: {exc}"
            if failure_class is FailureClass.PERMANENT:
                message = f"{INVALID_CREDENTIAL_MESSAGE} ({message})"
            raise SubTaskStartError(planned.name, failure_class, message) from exc

        log.info(
            "subtask_started",
            job_id=job_id,
            subtask=planned.name,
            remote_ref=handle.remote_ref,
        )
        return handle

    def cancel_job(self, job_id: str) -> int:
        """Cancel optional starts still in flight for a job."""
        tasks = self._optional_tasks.pop(job_id, set())
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def aclose(self) -> None:
        tasks = [task for tasks in self._optional_tasks.values() for task in tasks]
        self._optional_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _start_optional(self, job_id: str, planned: SubTaskPlan) -> None:
        try:
            handle = await self.start(job_id, planned)
        except SubTaskStartError as exc:
            await self._machine.record_optional_start_failure(job_id, planned.name, str(exc))
            return

        try:
            recorded = await self._machine.record_optional_started(job_id, planned.name, handle)
        except asyncio.CancelledError:
            self._capability.release_operation(handle)
            raise

        if recorded:
            self._scheduler.schedule(job_id, planned.name)
        else:
            self._capability.release_operation(handle)
            log.info("optional_start_discarded", job_id=job_id, subtask=planned.name)

    def _forget(self, job_id: str, task: "asyncio.Task[None]") -> None:
        tasks = self._optional_tasks.get(job_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._optional_tasks.pop(job_id, None)
        if not task.cancelled() and task.exception() is not None:
            log.error("optional_start_crashed", job_id=job_id, error=str(task.exception()))
