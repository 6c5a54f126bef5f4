"""
Batch job endpoints.

The operator dashboard starts the legacy migration and the derivative
retrofit from here and polls their progress. Jobs run in the background
by default; ?wait=true runs inline and returns the finished result,
which is handy from scripts.

Only one job of each kind runs at a time. Starting a second one while
the first is still active returns 409.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ...core.jobs.models import ConfigurationError
from ..dependencies import AuthenticatedUser, JobRegistryDep, JobRunnerDep
from ..job_runner import (
    JobConflictError,
    JobKind,
    JobNotFoundError,
    JobRegistry,
    JobRunner,
    JobState,
    JobStatus,
    run_job,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class JobProgress(BaseModel):
    """Latest progress event of a running job."""
    position: int = Field(description="1-based index of the last finished item")
    candidates: int = Field(description="Number of records the job will visit")
    record_id: str
    file_name: str
    status: str = Field(description="Outcome of the last item")
    counts: dict[str, int]


class JobResponse(BaseModel):
    """Status of a job run."""
    job_id: str
    kind: JobKind
    state: JobState
    started_at: datetime
    finished_at: Optional[datetime] = None
    progress: Optional[JobProgress] = None
    result: Optional[dict[str, Any]] = Field(None, description="Final tallies and per-item details")
    error: Optional[str] = None


def _to_response(job: JobStatus) -> JobResponse:
    progress = None
    if job.progress is not None:
        progress = JobProgress(
            position=job.progress.position,
            candidates=job.progress.candidates,
            record_id=job.progress.record_id,
            file_name=job.progress.file_name,
            status=job.progress.status.value,
            counts=job.progress.counts,
        )

    return JobResponse(
        job_id=job.id,
        kind=job.kind,
        state=job.state,
        started_at=job.started_at,
        finished_at=job.finished_at,
        progress=progress,
        result=job.result.to_dict() if job.result is not None else None,
        error=job.error,
    )


async def _start(
    kind: JobKind,
    wait: bool,
    runner: JobRunner,
    registry: JobRegistry,
    response: Response,
) -> JobResponse:
    try:
        job = registry.register(kind)
    except JobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    run = run_job(runner, kind)

    if not wait:
        registry.launch(job, run)
        response.status_code = status.HTTP_202_ACCEPTED
        return _to_response(job)

    await registry.execute(job, run)
    if isinstance(job.exception, ConfigurationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=job.error)
    if job.state is JobState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{kind.value.capitalize()} job failed: {job.error}",
        )
    return _to_response(job)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/migration",
    response_model=JobResponse,
    summary="Migrate legacy files",
    description="Move document and image files from legacy storage to object storage",
)
async def start_migration(
    response: Response,
    api_key: AuthenticatedUser,
    runner: JobRunnerDep,
    registry: JobRegistryDep,
    wait: bool = Query(False, description="Run inline and return the finished result"),
) -> JobResponse:
    logger.info("Migration requested", extra={"wait": wait})
    return await _start(JobKind.MIGRATION, wait, runner, registry, response)


@router.post(
    "/retrofit",
    response_model=JobResponse,
    summary="Backfill image derivatives",
    description="Generate missing or legacy-format thumbnails and previews as WebP",
)
async def start_retrofit(
    response: Response,
    api_key: AuthenticatedUser,
    runner: JobRunnerDep,
    registry: JobRegistryDep,
    wait: bool = Query(False, description="Run inline and return the finished result"),
) -> JobResponse:
    logger.info("Retrofit requested", extra={"wait": wait})
    return await _start(JobKind.RETROFIT, wait, runner, registry, response)


@router.get(
    "",
    response_model=list[JobResponse],
    summary="List jobs",
)
async def list_jobs(api_key: AuthenticatedUser, registry: JobRegistryDep) -> list[JobResponse]:
    return [_to_response(job) for job in registry.recent()]


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job status",
    description="Current state, latest progress and, once finished, the result",
)
async def get_job(job_id: str, api_key: AuthenticatedUser, registry: JobRegistryDep) -> JobResponse:
    try:
        return _to_response(registry.get(job_id))
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
    description="The job stops before its next item; the current item finishes.",
)
async def cancel_job(job_id: str, api_key: AuthenticatedUser, registry: JobRegistryDep) -> JobResponse:
    try:
        job = registry.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _to_response(job)
