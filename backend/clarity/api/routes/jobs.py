"""Background job status and management routes."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from clarity.api.deps import CurrentUser, JobQueueDep, require_development
from clarity.config import get_settings
from clarity.exceptions import NotFoundError
from clarity.schemas.jobs import (
    CleanupResponse,
    JobRead,
    JobStatsRead,
    RetryJobsRequest,
    RetryJobsResponse,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])
settings = get_settings()


@router.get("/", response_model=list[JobRead])
async def list_jobs(
    current_user: CurrentUser,
    job_queue: JobQueueDep,
    limit: int = Query(20, ge=1, le=100),
) -> list[JobRead]:
    """The current user's most recent jobs."""
    jobs = await job_queue.list_user_jobs(current_user.id, limit)
    return [JobRead.model_validate(job) for job in jobs]


@router.get("/stats", response_model=JobStatsRead, dependencies=[Depends(require_development)])
async def job_stats(current_user: CurrentUser, job_queue: JobQueueDep) -> JobStatsRead:
    """Queue-wide counts. Development only."""
    return JobStatsRead.model_validate(job_queue.stats())


@router.post("/retry", response_model=RetryJobsResponse)
async def retry_failed_jobs(
    data: RetryJobsRequest, current_user: CurrentUser, job_queue: JobQueueDep
) -> RetryJobsResponse:
    """Re-queue failed jobs. Ids that are not failed, or not yours, are skipped."""
    job_ids = await job_queue.retry_failed(data.job_ids, user_id=current_user.id)
    return RetryJobsResponse(job_ids=job_ids)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_jobs(
    current_user: CurrentUser,
    job_queue: JobQueueDep,
    days_old: int = Query(settings.job_cleanup_days, ge=0),
) -> CleanupResponse:
    """Delete your completed and failed jobs older than `days_old` days."""
    return CleanupResponse(deleted=await job_queue.cleanup(days_old, user_id=current_user.id))


@router.get("/{job_id}", response_model=JobRead)
async def get_job(job_id: UUID, current_user: CurrentUser, job_queue: JobQueueDep) -> JobRead:
    job = await job_queue.get_status(job_id)
    if job is None or job.user_id != current_user.id:
        raise NotFoundError("Job not found")
    return JobRead.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobRead)
async def cancel_job(job_id: UUID, current_user: CurrentUser, job_queue: JobQueueDep) -> JobRead:
    """Cancel a pending or running job. Finished jobs are returned unchanged."""
    job = await job_queue.get_status(job_id)
    if job is None or job.user_id != current_user.id:
        raise NotFoundError("Job not found")
    await job_queue.cancel(job_id)
    return JobRead.model_validate(await job_queue.get_status(job_id))
