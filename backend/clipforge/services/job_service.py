"""Job service layer."""
import asyncio
import json
import logging
import uuid
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clipforge.errors import InvalidJobState, JobNotFound
from clipforge.models.job import ClipResult, Job
from clipforge.pipeline.options import JobSubmission
from clipforge.pipeline.plans import PlanLimits
from clipforge.pipeline.state import ClipStatus, JobStatus, can_cancel
from clipforge.services.progress import ProgressTracker
from clipforge.services.quota_service import QuotaGate

logger = logging.getLogger(__name__)

PRIORITY_BOOST = 10


class OwnerLocks:
    """One asyncio lock per owner, shared by every request in the process."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_owner(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = asyncio.Lock()
        return lock


class JobService:
    """Service for job submission, lookup, cancel and retry."""

    def __init__(
        self,
        db: AsyncSession,
        quota: QuotaGate,
        tracker: ProgressTracker,
        locks: OwnerLocks,
        max_retries: int = 3,
    ):
        self.db = db
        self.quota = quota
        self.tracker = tracker
        self.locks = locks
        self.max_retries = max_retries

    async def create_job(self, owner_id: str, submission: JobSubmission) -> Tuple[Job, PlanLimits]:
        """
        Create a queued job after the quota check passes.

        The quota check, the job rows and the usage record are serialized per
        owner so two concurrent submissions cannot both pass the last slot.

        Args:
            owner_id: Submitting owner
            submission: Validated job payload

        Returns:
            (job, plan limits in effect)

        Raises:
            QuotaExceeded: If the owner's daily or monthly limit is reached
        """
        async with self.locks.for_owner(owner_id):
            plan_code = await self.quota.plan_for_owner(owner_id)
            limits = await self.quota.check_and_reserve(
                owner_id, plan_code, len(submission.segments)
            )

            job = Job(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                plan_code=limits.plan_code,
                source_ref=submission.source_ref,
                options=submission.options.model_dump_json(),
                segments=json.dumps([s.model_dump(mode="json") for s in submission.segments]),
                status=JobStatus.QUEUED,
                progress=0,
                message="Queued",
                cancel_requested=False,
                priority=PRIORITY_BOOST if limits.priority_hint else 0,
                retry_count=0,
                max_retries=self.max_retries,
            )
            for index, segment in enumerate(submission.segments):
                job.clips.append(ClipResult(
                    id=uuid.uuid4().hex,
                    index=index,
                    title=segment.title,
                    platform=segment.target_platform.value,
                    start_time=segment.start_time,
                    end_time=segment.end_time,
                    status=ClipStatus.PENDING,
                ))

            self.db.add(job)
            self.quota.record_usage(owner_id, job.id, len(submission.segments))
            await self.db.commit()

        logger.info(
            f"Created job {job.id} for {owner_id} on plan {limits.plan_code} "
            f"({len(submission.segments)} segments)"
        )
        return job, limits

    async def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        """
        Get a job with its clips loaded.

        Raises:
            JobNotFound: If the job does not exist or belongs to another owner
        """
        result = await self.db.execute(
            select(Job)
            .where(Job.id == job_id)
            .options(selectinload(Job.clips))
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, owner_id: str, limit: int = 50) -> List[Job]:
        """List an owner's jobs, newest first."""
        result = await self.db.execute(
            select(Job)
            .where(Job.owner_id == owner_id)
            .options(selectinload(Job.clips))
            .order_by(Job.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def cancel_job(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        """
        Cancel a job.

        A queued job is cancelled immediately. A processing job is flagged and
        the orchestrator stops at its next segment boundary.

        Raises:
            InvalidJobState: If the job is already terminal
        """
        job = await self.get_job(job_id, owner_id)
        if not can_cancel(job.status):
            raise InvalidJobState(
                f"Cannot cancel job {job_id} in status {job.status.value}",
                status=job.status.value,
            )

        if job.status == JobStatus.QUEUED:
            try:
                await self.tracker.mark_cancelled(
                    job_id, "Cancelled before processing", expected=JobStatus.QUEUED
                )
                return await self.get_job(job_id, owner_id)
            except InvalidJobState:
                logger.info(f"Job {job_id} left the queue during cancel, flagging instead")

        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
            .values(cancel_requested=True, message="Cancellation requested")
        )
        await self.db.commit()
        if result.rowcount != 1:
            job = await self.get_job(job_id, owner_id)
            raise InvalidJobState(
                f"Cannot cancel job {job_id} in status {job.status.value}",
                status=job.status.value,
            )
        logger.info(f"Cancellation requested for job {job_id}")

        return await self.get_job(job_id, owner_id)

    async def retry_job(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        """
        Requeue a failed job.

        Retries are not counted against the quota again.

        Raises:
            InvalidJobState: If the job is not failed or has no retries left
        """
        await self.get_job(job_id, owner_id)
        await self.tracker.requeue_for_retry(job_id)
        return await self.get_job(job_id, owner_id)
