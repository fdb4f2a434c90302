"""Production job routes.

This module provides the FastAPI routes callers use to drive the orchestrator:
- POST   /api/v1/jobs               Submit a production job (201)
- GET    /api/v1/jobs               List jobs in submission order
- GET    /api/v1/jobs/events        Server-sent stream of job changes
- GET    /api/v1/jobs/{id}          Read one job
- DELETE /api/v1/jobs/{id}          Cancel and remove a job (204)
- POST   /api/v1/jobs/{id}/retry    Put a failed job back in the queue
- POST   /api/v1/jobs/{id}/extend   Enqueue an extension of a completed video

Pattern:
- Validate input with pydantic (422 on failure)
- Call the orchestrator held on app.state
- Map JobNotFoundError → 404, JobStateError → 409
"""

from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse

from adstudio.exceptions import JobNotFoundError, JobStateError
from adstudio.schemas.job import ExtendRequest, JobSpec, JobView
from adstudio.services.orchestrator import ProductionOrchestrator

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


def get_orchestrator(request: Request) -> ProductionOrchestrator:
    return request.app.state.orchestrator  # type: ignore[no-any-return]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=JobView)
async def submit_job(
    spec: JobSpec, orchestrator: ProductionOrchestrator = Depends(get_orchestrator)
) -> JobView:
    job_id = orchestrator.submit(spec)
    log.info("job_submitted_via_api", job_id=job_id)
    return orchestrator.get(job_id)


@router.get("", response_model=list[JobView])
async def list_jobs(
    orchestrator: ProductionOrchestrator = Depends(get_orchestrator),
) -> list[JobView]:
    return orchestrator.list_jobs()


@router.get("/events")
async def stream_job_events(
    orchestrator: ProductionOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Stream every job view, then each change, as server-sent events."""

    async def events() -> AsyncIterator[str]:
        async for view in orchestrator.subscribe():
            yield f"event: job\ndata: {view.model_dump_json()}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/{job_id}", response_model=JobView)
async def get_job(
    job_id: str, orchestrator: ProductionOrchestrator = Depends(get_orchestrator)
) -> JobView:
    try:
        return orchestrator.get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_job(
    job_id: str, orchestrator: ProductionOrchestrator = Depends(get_orchestrator)
) -> Response:
    try:
        await orchestrator.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{job_id}/retry", response_model=JobView)
async def retry_job(
    job_id: str, orchestrator: ProductionOrchestrator = Depends(get_orchestrator)
) -> JobView:
    try:
        return await orchestrator.retry_failed(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except JobStateError as e:
        log.warning("job_retry_rejected", job_id=job_id, error=str(e))
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/{job_id}/extend", status_code=status.HTTP_201_CREATED, response_model=JobView)
async def extend_job(
    job_id: str,
    body: ExtendRequest,
    orchestrator: ProductionOrchestrator = Depends(get_orchestrator),
) -> JobView:
    try:
        extension_id = orchestrator.extend(job_id, body.prompt)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return orchestrator.get(extension_id)
