"""Pydantic schemas for API responses.

Request bodies use the validated pipeline types directly
(``clipforge.pipeline.options.JobSubmission``).
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Job Schemas
# =============================================================================

class RestrictionsApplied(BaseModel):
    """Plan restrictions as they apply to a submitted job."""
    watermark: bool
    max_resolution: str
    priority: str


class JobCreateResponse(BaseModel):
    """Response for an accepted job submission."""
    job_id: str
    status: str
    restrictions_applied: RestrictionsApplied


class ClipMetadata(BaseModel):
    duration: Optional[float] = None
    resolution: Optional[str] = None
    file_size: Optional[int] = None


class ClipResultResponse(BaseModel):
    """Outcome of one requested segment."""
    id: str
    index: int
    title: Optional[str]
    platform: str
    start_time: float
    end_time: float
    status: str
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: ClipMetadata = Field(default_factory=ClipMetadata)
    error: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Job status as seen by polling clients."""
    job_id: str
    status: str
    progress_percent: int
    message: Optional[str] = None
    plan_code: str
    clip_results: List[ClipResultResponse]
    output_urls: List[str]
    error_summary: Optional[str] = None
    retry_count: int
    max_retries: int
    cancel_requested: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QuotaErrorResponse(BaseModel):
    """Body of a 429 response."""
    code: str
    message: str
    upgrade_required: bool = True
    limit: int
    used: int


# =============================================================================
# Plan & Usage Schemas
# =============================================================================

class PlanResponse(BaseModel):
    plan_code: str
    max_resolution: str
    watermark_enabled: bool
    daily_clip_limit: int
    monthly_clip_limit: int
    priority_hint: bool
    max_source_size_mb: int


class UsageResponse(BaseModel):
    """Owner usage against the active plan."""
    owner_id: str
    plan: PlanResponse
    clips_today: int
    clips_this_month: int
    credits_used: int
    warnings: List[str]


# =============================================================================
# System Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    ytdlp_available: bool
    workers_running: bool
    queued_jobs: int
    message: Optional[str] = None
