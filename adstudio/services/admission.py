"""Admission Controller: FIFO queue with a single initiation in flight.

Jobs are admitted in submission order. At most one job is in Initiating at a
time (creative brief, plan, starting mandatory sub-tasks); polling is not
limited, so any number of jobs may be in Polling or QuotaWait together.

Caller actions handled here:
    enqueue      new job enters as Pending
    cancel       stop timers and starts, remove the job, release its handles
    retry_failed Failed → Pending; the job keeps its place by submission order

Architecture Pattern:
    A pump task (run) waits on an asyncio.Event set by enqueue, retry and
    the end of every initiation, then admits Pending jobs one at a time.
"""

import asyncio
import uuid

from adstudio.clients.base import BriefWriter
from adstudio.exceptions import JobNotFoundError
from adstudio.models import Job, JobStatus
from adstudio.schemas.job import JobSpec
from adstudio.services.asset_coordinator import AssetGenerationCoordinator
from adstudio.services.creative_brief import build_plan, derive_brief
from adstudio.services.job_state_machine import JobStateMachine
from adstudio.services.polling_scheduler import PollingScheduler
from adstudio.services.state_store import JobStore
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


class AdmissionController:
    """Admits Pending jobs one at a time, in submission order."""

    def __init__(
        self,
        store: JobStore,
        machine: JobStateMachine,
        coordinator: AssetGenerationCoordinator,
        scheduler: PollingScheduler,
        brief_writer: BriefWriter | None = None,
    ):
        self._store = store
        self._machine = machine
        self._coordinator = coordinator
        self._scheduler = scheduler
        self._brief_writer = brief_writer
        self._initiating: str | None = None
        self._initiation: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._pump: asyncio.Task[None] | None = None

    @property
    def initiating_job_id(self) -> str | None:
        return self._initiating

    def enqueue(self, spec: JobSpec) -> str:
        """Add a new Pending job and return its id."""
        job = Job(id=uuid.uuid4().hex, spec=spec)
        self._store.insert(job)
        log.info("job_enqueued", job_id=job.id, product=spec.name, queued=len(self._store))
        self._wakeup.set()
        return job.id

    async def admit_next(self) -> str | None:
        """Initiate the oldest Pending job, if no initiation is in flight.

        Returns:
            The admitted job id, or None if nothing was admitted.
        """
        if self._initiating is not None:
            return None
        job = next((job for job in self._store.jobs() if job.status is JobStatus.PENDING), None)
        if job is None:
            return None

        self._initiating = job.id
        try:
            started = await self._machine.begin_initiation(job.id)
            if started is None:
                return None
            log.info("job_initiating", job_id=job.id)
            self._initiation = asyncio.create_task(
                self._initiate(started), name=f"initiate:{job.id}"
            )
            await asyncio.wait({self._initiation})
            return job.id
        finally:
            if self._initiation is not None and not self._initiation.done():
                self._initiation.cancel()
            self._initiating = None
            self._initiation = None
            self._wakeup.set()

    async def cancel(self, job_id: str) -> None:
        """Remove a job in any state. Nothing is merged into it afterwards.

        Raises:
            JobNotFoundError: If the job is not tracked.
        """
        job = self._store.require(job_id)
        if self._initiating == job_id and self._initiation is not None:
            self._initiation.cancel()
        self._scheduler.cancel_job(job_id)
        self._coordinator.cancel_job(job_id)
        removed = await self._store.remove(job_id)
        if removed is not None:
            self._scheduler.release_job(removed)
        log.info("job_cancelled", job_id=job_id, status=job.status.value)

    async def retry_failed(self, job_id: str) -> Job:
        """Failed → Pending with fresh retry budgets.

        Raises:
            JobNotFoundError: If the job is not tracked.
            JobStateError: If the job is not Failed.
        """
        self._store.require(job_id)
        self._scheduler.cancel_job(job_id)
        self._coordinator.cancel_job(job_id)
        job = await self._machine.reset_for_retry(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        self._wakeup.set()
        return job

    async def run(self) -> None:
        """Pump loop: admit Pending jobs whenever something changes."""
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while await self.admit_next() is not None:
                pass

    def start(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self.run(), name="admission-pump")
            self._wakeup.set()

    async def stop(self) -> None:
        pump, self._pump = self._pump, None
        if self._initiation is not None:
            self._initiation.cancel()
        if pump is not None:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _initiate(self, job: Job) -> None:
        try:
            brief = None
            if job.spec.extend_from is None:
                brief = await derive_brief(job.spec, self._brief_writer)
            planned = await self._machine.record_plan(job.id, brief, build_plan(job.spec, brief))
            if planned is None:
                return
            await self._coordinator.launch(planned)
        except asyncio.CancelledError:
            log.info("job_initiation_cancelled", job_id=job.id)
            raise
        except Exception as exc:
            log.error("job_initiation_failed", job_id=job.id, error=str(exc))
            self._coordinator.cancel_job(job.id)
            self._scheduler.cancel_job(job.id)
            await self._machine.fail_initiation(job.id, str(exc) or type(exc).__name__)
            failed = self._store.get(job.id)
            if failed is not None:
                self._scheduler.release_job(failed)
