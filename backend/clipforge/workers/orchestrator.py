"""Pipeline state machine for one clip-generation job."""
import asyncio
import json
import logging
import traceback
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from clipforge.errors import (
    AnalyzerFailure,
    ClipForgeError,
    EncodeFailure,
    InvalidJobState,
    InvalidSegment,
    SourceUnavailable,
    UploadFailure,
)
from clipforge.models.job import Job
from clipforge.pipeline.options import ClipSegment, ProcessingOptions
from clipforge.pipeline.plans import PlanCatalog, PlanLimits
from clipforge.pipeline.platforms import get_platform_config
from clipforge.pipeline.state import (
    BatchState,
    ClipStatus,
    JobStatus,
    SegmentOutcome,
    advance,
    final_status,
    summarize,
)
from clipforge.pipeline.tracking import TrackingTimeline
from clipforge.pipeline.transform import ClipSpecBuilder, TransformSpec
from clipforge.services.cleanup import CleanupManager
from clipforge.services.credit_service import CreditLedger
from clipforge.services.progress import ClipDetail, ProgressTracker

logger = logging.getLogger(__name__)

CANCEL_DISCARD_REASON = "discarded: job cancelled"
CANCEL_SKIP_REASON = "skipped: job cancelled"
INTERRUPTED_REASON = "interrupted: worker stopped before the clip finished"


@dataclass
class JobContext:
    """Immutable snapshot of what one job attempt needs."""
    job_id: str
    owner_id: str
    attempt: int
    source_ref: str
    limits: PlanLimits
    options: ProcessingOptions
    segments: List[ClipSegment]
    clip_ids: List[str]


class JobOrchestrator:
    """
    Runs one job: source, tracking, per-segment build/encode/upload, finalize.

    Segments run strictly in order. A failing segment fails only its clip;
    the job fails only when the source is unavailable or no clip succeeds.
    Cancellation is checked between steps and never interrupts an encode.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        plans: PlanCatalog,
        tracker: ProgressTracker,
        cleanup: CleanupManager,
        source_provider,
        encoder,
        storage,
        credits: CreditLedger,
        analyzer=None,
        source_timeout: float = 900.0,
        encode_timeout: float = 600.0,
        upload_timeout: float = 120.0,
        analyzer_timeout: float = 300.0,
    ):
        self._session_maker = session_maker
        self.plans = plans
        self.tracker = tracker
        self.cleanup = cleanup
        self.source_provider = source_provider
        self.encoder = encoder
        self.storage = storage
        self.credits = credits
        self.analyzer = analyzer
        self.source_timeout = source_timeout
        self.encode_timeout = encode_timeout
        self.upload_timeout = upload_timeout
        self.analyzer_timeout = analyzer_timeout

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """
        Run a queued job to a terminal state.

        Returns:
            The terminal status, or None if the job was not runnable
        """
        ctx = await self._load(job_id)
        if ctx is None:
            return None

        try:
            await self.tracker.mark_processing(job_id)
        except InvalidJobState as e:
            logger.info(f"Job {job_id} not started: {e.message}")
            return None

        try:
            return await self._execute(ctx)
        except asyncio.CancelledError:
            logger.info(f"Job {job_id} interrupted")
            try:
                await self._settle_cancelled(ctx, "Job interrupted")
            except ClipForgeError as settle_error:
                logger.error(f"Could not mark job {job_id} cancelled: {settle_error}")
            raise
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}\n{traceback.format_exc()}")
            cause = f"internal_error: {e}"
            try:
                _, completed = await self._close_open_clips(job_id, cause, cause)
                await self.tracker.finalize(
                    job_id,
                    JobStatus.FAILED,
                    message=f"Failed: {e}",
                    error_summary=cause,
                )
                await self.credits.charge(ctx.owner_id, job_id, ctx.attempt, completed)
            except ClipForgeError as finalize_error:
                logger.error(f"Could not mark job {job_id} failed: {finalize_error}")
            return JobStatus.FAILED

    async def _load(self, job_id: str) -> Optional[JobContext]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Job).where(Job.id == job_id).options(selectinload(Job.clips))
            )
            job = result.scalar_one_or_none()
            if not job:
                logger.error(f"Job {job_id} not found")
                return None
            if job.status != JobStatus.QUEUED:
                logger.info(f"Skipping job {job_id} in status {job.status.value}")
                return None

            return JobContext(
                job_id=job.id,
                owner_id=job.owner_id,
                attempt=job.retry_count,
                source_ref=job.source_ref,
                limits=self.plans.get(job.plan_code),
                options=ProcessingOptions.model_validate_json(job.options),
                segments=[ClipSegment.model_validate(s) for s in json.loads(job.segments)],
                clip_ids=[clip.id for clip in job.clips],
            )

    async def _execute(self, ctx: JobContext) -> JobStatus:
        async with self.cleanup.working_directory(ctx.job_id) as work_dir:
            await self.tracker.report_progress(ctx.job_id, 0, "Acquiring source...")
            try:
                handle = await asyncio.wait_for(
                    self.source_provider.fetch_source(ctx.source_ref, work_dir),
                    timeout=self.source_timeout,
                )
            except asyncio.TimeoutError:
                return await self._fail_source(
                    ctx, SourceUnavailable(f"timed out after {self.source_timeout:g}s")
                )
            except SourceUnavailable as e:
                return await self._fail_source(ctx, e)

            if not ctx.limits.allows_source_size(handle.size_bytes):
                size_mb = handle.size_bytes / (1024 * 1024)
                return await self._fail_source(ctx, SourceUnavailable(
                    f"Source size ({size_mb:.1f}MB) exceeds the {ctx.limits.plan_code} plan limit "
                    f"({ctx.limits.max_source_size_mb}MB). Upgrade for larger file support."
                ))

            timeline = await self._track(ctx, handle)
            builder = ClipSpecBuilder(ctx.limits, handle.width, handle.height)
            return await self._run_segments(ctx, handle, builder, timeline)

    async def _track(self, ctx: JobContext, handle) -> Optional[TrackingTimeline]:
        """Subject tracking once per job; any failure falls back to centered crops."""
        if not ctx.options.enable_subject_tracking:
            return None
        if self.analyzer is None:
            logger.info(f"Job {ctx.job_id}: subject tracking requested but no analyzer configured")
            return None

        await self.tracker.report_progress(ctx.job_id, 0, "Tracking subjects...")
        try:
            return await asyncio.wait_for(
                self.analyzer.analyze(handle, ctx.options),
                timeout=self.analyzer_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Job {ctx.job_id}: subject tracking timed out, using centered crop")
        except AnalyzerFailure as e:
            logger.warning(f"Job {ctx.job_id}: {e.describe()}, using centered crop")
        except Exception as e:
            logger.warning(f"Job {ctx.job_id}: subject tracking crashed ({e!r}), using centered crop")
        return None

    async def _run_segments(
        self,
        ctx: JobContext,
        handle,
        builder: ClipSpecBuilder,
        timeline: Optional[TrackingTimeline],
    ) -> JobStatus:
        state = BatchState(total=len(ctx.segments))
        output_urls: List[str] = []

        for index, (segment, clip_id) in enumerate(zip(ctx.segments, ctx.clip_ids)):
            if await self.tracker.is_cancel_requested(ctx.job_id):
                return await self._settle_cancelled(ctx)

            await self.tracker.report_clip_status(clip_id, ClipStatus.PROCESSING)
            await self.tracker.report_progress(
                ctx.job_id, state.progress, f"Processing clip {index + 1}/{state.total}"
            )

            cause = None
            detail = None
            try:
                spec = builder.build(
                    segment, ctx.options, timeline, get_platform_config(segment.target_platform)
                )
                encoded = await asyncio.wait_for(
                    self.encoder.encode(handle, spec), timeout=self.encode_timeout
                )
            except asyncio.TimeoutError:
                cause = EncodeFailure(f"timed out after {self.encode_timeout:g}s").describe()
            except (InvalidSegment, EncodeFailure) as e:
                cause = e.describe()
            except Exception as e:
                logger.error(f"Job {ctx.job_id} clip {index + 1} encode crashed: {e}\n{traceback.format_exc()}")
                cause = EncodeFailure(str(e) or type(e).__name__).describe()

            if cause is None:
                if await self.tracker.is_cancel_requested(ctx.job_id):
                    await self.tracker.report_clip_status(
                        clip_id, ClipStatus.FAILED, ClipDetail(error=CANCEL_DISCARD_REASON)
                    )
                    return await self._settle_cancelled(ctx)

                try:
                    detail = await asyncio.wait_for(
                        self._upload(ctx, index, spec, encoded), timeout=self.upload_timeout
                    )
                except asyncio.TimeoutError:
                    cause = UploadFailure(f"timed out after {self.upload_timeout:g}s").describe()
                except UploadFailure as e:
                    cause = e.describe()
                except Exception as e:
                    logger.error(f"Job {ctx.job_id} clip {index + 1} upload crashed: {e}\n{traceback.format_exc()}")
                    cause = UploadFailure(str(e) or type(e).__name__).describe()

            if cause is None:
                await self.tracker.report_clip_status(clip_id, ClipStatus.COMPLETED, detail)
                output_urls.append(detail.output_url)
            else:
                logger.warning(f"Job {ctx.job_id} clip {index + 1} failed: {cause}")
                await self.tracker.report_clip_status(clip_id, ClipStatus.FAILED, ClipDetail(error=cause))

            state, _ = advance(state, SegmentOutcome(
                index=index,
                succeeded=cause is None,
                title=segment.title,
                cause=cause,
            ))
            await self.tracker.report_progress(ctx.job_id, state.progress)

        status = final_status(state)
        summary = summarize(state)
        await self.tracker.finalize(
            ctx.job_id,
            status,
            message=summary,
            output_urls=output_urls,
            error_summary=summary if state.failures else None,
        )
        await self.credits.charge(ctx.owner_id, ctx.job_id, ctx.attempt, state.completed)
        return status

    async def _upload(
        self,
        ctx: JobContext,
        index: int,
        spec: TransformSpec,
        encoded,
    ) -> ClipDetail:
        """Store video and thumbnail; either failing fails the clip."""
        base = f"{ctx.owner_id}/{ctx.job_id}/attempt_{ctx.attempt}/clip_{index + 1:02d}"
        thumb_ext = getattr(self.encoder, "thumbnail_format", "jpg")
        video_url = await self.storage.upload(encoded.video_bytes, f"{base}.{spec.codec.container}")
        thumbnail_url = await self.storage.upload(encoded.thumbnail_bytes, f"{base}_thumb.{thumb_ext}")
        metadata = encoded.metadata
        return ClipDetail(
            output_url=video_url,
            thumbnail_url=thumbnail_url,
            duration=metadata.get("duration", spec.duration),
            resolution=metadata.get("resolution", spec.resolution_label),
            file_size=metadata.get("file_size", len(encoded.video_bytes)),
        )

    async def _fail_source(self, ctx: JobContext, error: SourceUnavailable) -> JobStatus:
        cause = error.describe()
        logger.error(f"Job {ctx.job_id}: {cause}")
        for clip_id in ctx.clip_ids:
            await self.tracker.report_clip_status(clip_id, ClipStatus.FAILED, ClipDetail(error=cause))
        await self.tracker.finalize(
            ctx.job_id,
            JobStatus.FAILED,
            message="Source unavailable",
            error_summary=cause,
        )
        await self.credits.charge(ctx.owner_id, ctx.job_id, ctx.attempt, 0)
        return JobStatus.FAILED

    async def _settle_cancelled(
        self,
        ctx: JobContext,
        message: str = "Job cancelled",
    ) -> JobStatus:
        """Fail clips that never ran and move the job to CANCELLED."""
        status, completed = await self._close_open_clips(
            ctx.job_id, CANCEL_DISCARD_REASON, CANCEL_SKIP_REASON
        )
        if status != JobStatus.CANCELLED:
            await self.tracker.mark_cancelled(ctx.job_id, message)
        await self.credits.charge(ctx.owner_id, ctx.job_id, ctx.attempt, completed)
        return JobStatus.CANCELLED

    async def settle_interrupted(self) -> int:
        """
        Settle jobs a previous process left PROCESSING.

        Jobs with a pending cancel become CANCELLED, the rest FAILED so they
        can be retried. Completed clips are kept and charged.

        Returns:
            Number of jobs settled
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(Job.id, Job.owner_id, Job.retry_count, Job.cancel_requested)
                .where(Job.status == JobStatus.PROCESSING)
            )
            rows = result.all()

        for job_id, owner_id, attempt, cancel_requested in rows:
            if cancel_requested:
                _, completed = await self._close_open_clips(
                    job_id, CANCEL_DISCARD_REASON, CANCEL_SKIP_REASON
                )
                await self.tracker.mark_cancelled(job_id, "Job interrupted")
            else:
                _, completed = await self._close_open_clips(
                    job_id, INTERRUPTED_REASON, INTERRUPTED_REASON
                )
                await self.tracker.finalize(
                    job_id,
                    JobStatus.FAILED,
                    message="Job interrupted",
                    error_summary=f"{INTERRUPTED_REASON}; {completed} clip(s) completed",
                )
            await self.credits.charge(owner_id, job_id, attempt, completed)
            logger.warning(f"Settled interrupted job {job_id} ({completed} clip(s) completed)")

        return len(rows)

    async def _close_open_clips(self, job_id: str, in_flight_reason: str, pending_reason: str):
        """Fail every unfinished clip; returns (job status, completed clip count)."""
        async with self._session_maker() as session:
            job = await session.get(Job, job_id, options=[selectinload(Job.clips)])
            status = job.status
            pending = [clip.id for clip in job.clips if clip.status == ClipStatus.PENDING]
            in_flight = [clip.id for clip in job.clips if clip.status == ClipStatus.PROCESSING]
            completed = sum(1 for clip in job.clips if clip.status == ClipStatus.COMPLETED)

        for clip_id in in_flight:
            await self.tracker.report_clip_status(
                clip_id, ClipStatus.FAILED, ClipDetail(error=in_flight_reason)
            )
        for clip_id in pending:
            await self.tracker.report_clip_status(
                clip_id, ClipStatus.FAILED, ClipDetail(error=pending_reason)
            )
        return status, completed
