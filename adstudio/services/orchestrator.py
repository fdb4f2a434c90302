"""Production orchestrator: the single entry point for callers.

Wires the collaborators together and exposes the caller actions:

    submit(spec)            enqueue a new job
    cancel(job_id)          remove a job in any state
    retry_failed(job_id)    put a failed job back in the queue
    extend(job_id, prompt)  enqueue an extension of a completed video
    get / list_jobs         read-only JobView projections
    subscribe()             stream of JobView changes

Usage:
    orchestrator = ProductionOrchestrator(GeminiClient(settings), settings=settings)
    await orchestrator.start()
    job_id = orchestrator.submit(spec)
    ...
    await orchestrator.shutdown()
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from adstudio.clients.base import BriefWriter, GenerationCapability
from adstudio.config import OrchestratorSettings, load_settings
from adstudio.constants import VIDEO_RESULT_KEY
from adstudio.exceptions import JobStateError
from adstudio.models import JobStatus, RawFailure
from adstudio.schemas.job import JobSpec, JobView
from adstudio.services.admission import AdmissionController
from adstudio.services.asset_coordinator import AssetGenerationCoordinator
from adstudio.services.backoff import BackoffPolicy
from adstudio.services.credentials import CredentialRefreshNotifier
from adstudio.services.error_classifier import ErrorClassifier
from adstudio.services.job_state_machine import JobStateMachine
from adstudio.services.polling_scheduler import PollingScheduler
from adstudio.services.state_store import JobStore
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


class ProductionOrchestrator:
    """Async orchestrator for creative production jobs.

    Args:
        capability: Remote generation service.
        brief_writer: Optional creative-direction step; template brief if None.
        settings: Settings snapshot; loaded from the environment if None.
        policy: Backoff policy; derived from settings if None.
        credential_refresh: Called (never awaited) on PERMANENT failures.
        sleep: Awaitable delay for poll timers and start retries.
    """

    def __init__(
        self,
        capability: GenerationCapability,
        *,
        brief_writer: BriefWriter | None = None,
        settings: OrchestratorSettings | None = None,
        policy: BackoffPolicy | None = None,
        credential_refresh: Callable[[RawFailure], Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or load_settings()
        self.policy = policy or BackoffPolicy.from_settings(self.settings)
        self.notifier = CredentialRefreshNotifier(credential_refresh)
        self.classifier = ErrorClassifier(on_permanent=self.notifier)
        self.store = JobStore()
        self.machine = JobStateMachine(self.store, self.policy)
        self.scheduler = PollingScheduler(
            self.store,
            self.machine,
            capability,
            self.classifier,
            interval=self.settings.poll_interval_seconds,
            max_poll_attempts=self.settings.max_poll_attempts,
            sleep=sleep,
        )
        self.coordinator = AssetGenerationCoordinator(
            self.machine, self.scheduler, capability, self.classifier, self.policy, sleep=sleep
        )
        self.admission = AdmissionController(
            self.store, self.machine, self.coordinator, self.scheduler, brief_writer=brief_writer
        )

    async def start(self) -> None:
        self.admission.start()
        log.info(
            "orchestrator_started",
            poll_interval_seconds=self.settings.poll_interval_seconds,
            max_poll_attempts=self.settings.max_poll_attempts,
        )

    async def shutdown(self) -> None:
        """Stop admission, every poll timer and pending notifications."""
        await self.admission.stop()
        await self.coordinator.aclose()
        await self.scheduler.aclose()
        await self.notifier.aclose()
        log.info("orchestrator_stopped", jobs=len(self.store))

    def submit(self, spec: JobSpec) -> str:
        return self.admission.enqueue(spec)

    async def cancel(self, job_id: str) -> None:
        await self.admission.cancel(job_id)

    async def retry_failed(self, job_id: str) -> JobView:
        return JobView.from_job(await self.admission.retry_failed(job_id))

    def extend(self, job_id: str, prompt: str) -> str:
        """Enqueue a new job extending the video of a completed job.

        Raises:
            JobNotFoundError: If the job is not tracked.
            JobStateError: If the job has not completed with a video.
        """
        source = self.store.require(job_id)
        video_uri = source.result.get(VIDEO_RESULT_KEY)
        if source.status is not JobStatus.COMPLETED or not video_uri:
            raise JobStateError(f"Only completed jobs with a video can be extended ({job_id})")
        spec = source.spec.model_copy(
            update={
                "name": f"{source.spec.name} (extended)",
                "images": (),
                "scenes": (),
                "extend_from": video_uri,
                "extend_prompt": prompt,
            }
        )
        return self.admission.enqueue(spec)

    def get(self, job_id: str) -> JobView:
        return JobView.from_job(self.store.require(job_id))

    def list_jobs(self) -> list[JobView]:
        return [JobView.from_job(job) for job in self.store.jobs()]

    def subscribe(self) -> AsyncIterator[JobView]:
        return self.store.subscribe()
