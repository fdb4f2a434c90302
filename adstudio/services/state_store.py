"""State Store: the shared table of job records.

Every mutation goes through merge(job_id, fn). fn receives the record as it
is at application time (not a snapshot captured earlier) and returns a
partial update: a dict of Job field names to new values. Merges on the same
job are serialized by a per-job lock; merges on different jobs are
independent.

Why fn and not a value:
    Poll timers, the coordinator and caller actions race to update different
    sub-task entries of the same job. Building the new mapping inside fn from
    the current record keeps sibling updates; writing back a record read
    before an await would silently drop them.

Subscribers receive a JobView after every insert, merge and removal. Each
subscriber has a bounded buffer; when it is full the oldest view is dropped.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import fields, replace
from typing import Any

from adstudio.exceptions import InvalidStateTransitionError, JobNotFoundError
from adstudio.models import Job, JobStatus, utcnow
from adstudio.schemas.job import JobView
from adstudio.utils.logging import get_logger

log = get_logger(__name__)

PartialUpdate = dict[str, Any]
MergeFn = Callable[[Job], PartialUpdate | None]

SUBSCRIBER_QUEUE_SIZE = 256

_IMMUTABLE_FIELDS = frozenset({"id", "spec", "submitted_at", "updated_at"})
_MERGEABLE_FIELDS = frozenset(f.name for f in fields(Job)) - _IMMUTABLE_FIELDS


class JobStore:
    """In-process table of Job records with race-safe merges.

    Args:
        subscriber_queue_size: Views buffered per subscriber. A subscriber that
            falls further behind loses its oldest views first.
    """

    def __init__(self, subscriber_queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._subscriber_queue_size = subscriber_queue_size
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._subscribers: set[asyncio.Queue[JobView]] = set()

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def insert(self, job: Job) -> Job:
        """Start tracking a new job.

        Raises:
            ValueError: If a job with the same id is already tracked.
        """
        if job.id in self._jobs:
            raise ValueError(f"Job already tracked: {job.id}")
        self._jobs[job.id] = job
        self._locks[job.id] = asyncio.Lock()
        self._publish(JobView.from_job(job))
        return job

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def jobs(self) -> list[Job]:
        """All tracked jobs in submission order."""
        return list(self._jobs.values())

    async def merge(self, job_id: str, fn: MergeFn) -> Job | None:
        """Atomically apply fn to the current record of job_id.

        Args:
            job_id: Job to update.
            fn: Reads the current Job, returns a partial update (or None/{}
                for no change). Must not await.

        Returns:
            The record after the merge, or None if the job is not tracked
            (removed before or while waiting for the lock).

        Raises:
            InvalidStateTransitionError: If the update changes status along
                an edge not listed in Job.VALID_TRANSITIONS.
        """
        lock = self._locks.get(job_id)
        if lock is None:
            return None

        async with lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            update = fn(current)
            if not update:
                return current
            merged = self._apply(current, update)
            self._jobs[job_id] = merged

        self._publish(JobView.from_job(merged))
        return merged

    async def remove(self, job_id: str) -> Job | None:
        """Stop tracking a job. Later merges on it are no-ops."""
        lock = self._locks.get(job_id)
        if lock is None:
            return None

        async with lock:
            job = self._jobs.pop(job_id, None)
            self._locks.pop(job_id, None)

        if job is not None:
            self._publish(JobView.from_job(job, removed=True))
        return job

    async def subscribe(self) -> AsyncIterator[JobView]:
        """Yield a view of every tracked job, then every subsequent change."""
        queue: asyncio.Queue[JobView] = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers.add(queue)
        try:
            for job in self.jobs():
                yield JobView.from_job(job)
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    def _apply(self, current: Job, update: PartialUpdate) -> Job:
        unknown = set(update) - _MERGEABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be merged: {sorted(unknown)}")

        status = update.get("status")
        if isinstance(status, JobStatus) and status is not current.status:
            if not current.can_transition_to(status):
                raise InvalidStateTransitionError(
                    f"Invalid transition: {current.status.value} → {status.value}",
                    from_status=current.status,
                    to_status=status,
                )

        merged = replace(current, **update, updated_at=utcnow())
        waiting = merged.status in (JobStatus.POLLING, JobStatus.QUOTA_WAIT)
        if waiting != merged.has_running_mandatory():
            log.warning(
                "job_status_handle_mismatch",
                job_id=merged.id,
                status=merged.status.value,
                running_mandatory=merged.has_running_mandatory(),
            )
        return merged

    def _publish(self, view: JobView) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                log.debug("subscriber_view_dropped", job_id=view.id)
            queue.put_nowait(view)
