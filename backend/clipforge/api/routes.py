"""API routes."""
import logging
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import InvalidJobState, JobNotFound, QuotaExceeded
from clipforge.models.job import Job
from clipforge.pipeline.options import JobSubmission
from clipforge.pipeline.transform import restrictions_applied
from clipforge.services.container import ServiceContainer
from clipforge.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available
from clipforge.utils.ytdlp import check_ytdlp_available
from clipforge.api.schemas import (
    ClipResultResponse,
    HealthResponse,
    JobCreateResponse,
    JobStatusResponse,
    PlanResponse,
    QuotaErrorResponse,
    RestrictionsApplied,
    UsageResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


# =============================================================================
# Dependencies
# =============================================================================

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_db(services: ServiceContainer = Depends(get_services)) -> AsyncIterator[AsyncSession]:
    async for session in services.database.session():
        yield session


def get_owner_id(x_owner_id: str = Header(..., alias="X-Owner-Id", min_length=1)) -> str:
    """Owner identity, set by the authenticating proxy in front of the API."""
    return x_owner_id


# =============================================================================
# Health & System
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(services: ServiceContainer = Depends(get_services)):
    """Check API health and dependencies."""
    settings = services.settings
    ffmpeg_ok = check_ffmpeg_available(settings.ffmpeg_path)
    ffprobe_ok = check_ffprobe_available(settings.ffprobe_path)
    ytdlp_ok = check_ytdlp_available(settings.ytdlp_path)

    all_ok = ffmpeg_ok and ffprobe_ok and ytdlp_ok

    message = None
    if not all_ok:
        missing = []
        if not ffmpeg_ok:
            missing.append("ffmpeg")
        if not ffprobe_ok:
            missing.append("ffprobe")
        if not ytdlp_ok:
            missing.append("yt-dlp")
        message = f"Missing dependencies: {', '.join(missing)}"

    return HealthResponse(
        status="healthy" if all_ok else "degraded",
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        ytdlp_available=ytdlp_ok,
        workers_running=services.runner.started,
        queued_jobs=services.runner.queued_count(),
        message=message
    )


# =============================================================================
# Jobs
# =============================================================================

@router.post(
    "/jobs",
    response_model=JobCreateResponse,
    status_code=201,
    responses={429: {"model": QuotaErrorResponse}},
)
async def create_job(
    data: JobSubmission,
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """Submit a clip-generation job."""
    service = services.job_service(db)
    try:
        job, limits = await service.create_job(owner_id, data)
    except QuotaExceeded as e:
        return JSONResponse(
            status_code=429,
            content=QuotaErrorResponse(
                code=e.code,
                message=e.message,
                upgrade_required=True,
                limit=e.limit,
                used=e.used,
            ).model_dump(),
        )

    services.runner.submit(job.id, job.priority)
    return JobCreateResponse(
        job_id=job.id,
        status=job.status.value,
        restrictions_applied=RestrictionsApplied(**restrictions_applied(data.options, limits)),
    )


@router.get("/jobs", response_model=List[JobStatusResponse])
async def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """List the owner's jobs, newest first."""
    jobs = await services.job_service(db).list_jobs(owner_id, limit=limit)
    return [_job_to_response(job) for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """Get job status and per-clip results."""
    try:
        job = await services.job_service(db).get_job(job_id, owner_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_to_response(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """Cancel a queued or processing job."""
    try:
        job = await services.job_service(db).cancel_job(job_id, owner_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobState as e:
        raise HTTPException(status_code=409, detail=e.message)
    return _job_to_response(job)


@router.post("/jobs/{job_id}/retry", response_model=JobStatusResponse)
async def retry_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """Requeue a failed job that has retries left."""
    try:
        job = await services.job_service(db).retry_job(job_id, owner_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobState as e:
        raise HTTPException(status_code=409, detail=e.message)

    services.runner.submit(job.id, job.priority)
    return _job_to_response(job)


# =============================================================================
# Plans & Usage
# =============================================================================

@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(services: ServiceContainer = Depends(get_services)):
    """List the plan catalog."""
    return [PlanResponse(**services.plans.get(code).to_dict()) for code in services.plans.codes()]


@router.get("/plans/{plan_code}", response_model=PlanResponse)
async def get_plan(plan_code: str, services: ServiceContainer = Depends(get_services)):
    """Get one plan's limits."""
    if plan_code not in services.plans.codes():
        raise HTTPException(status_code=404, detail="Plan not found")
    return PlanResponse(**services.plans.get(plan_code).to_dict())


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    owner_id: str = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db)
):
    """Clip usage against the owner's plan."""
    summary = await services.quota_gate(db).usage_summary(owner_id)
    credits_used = await services.credits.total_for_owner(owner_id)
    return UsageResponse(
        owner_id=summary["owner_id"],
        plan=PlanResponse(**summary["plan"]),
        clips_today=summary["clips_today"],
        clips_this_month=summary["clips_this_month"],
        credits_used=credits_used,
        warnings=summary["warnings"],
    )


# =============================================================================
# Helpers
# =============================================================================

def _job_to_response(job: Job) -> JobStatusResponse:
    """Convert job model to status response."""
    return JobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        progress_percent=job.progress,
        message=job.message,
        plan_code=job.plan_code,
        clip_results=[ClipResultResponse(**clip.to_dict()) for clip in job.clips],
        output_urls=job.output_url_list,
        error_summary=job.error_summary,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        cancel_requested=job.cancel_requested,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )
