"""Job and clip progress tracking.

The tracker is the only component that writes ``Job.progress``,
``Job.status`` and ``ClipResult.status``. Consumers either poll the database
(through the status endpoint) or subscribe to in-process events.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from clipforge.errors import InvalidJobState, JobNotFound
from clipforge.models.job import ClipResult, Job
from clipforge.pipeline.state import (
    ClipStatus,
    JobStatus,
    can_retry,
    can_transition_clip,
    validate_job_transition,
)

logger = logging.getLogger(__name__)


@dataclass
class ClipDetail:
    """Optional fields recorded alongside a clip status change."""
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None


class ProgressTracker:
    """Persists status/progress and fans out change events."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, set()).add(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def _publish(self, job_id: str, event: dict) -> None:
        event = {"job_id": job_id, **event}
        for queue in self._subscribers.get(job_id, ()):
            queue.put_nowait(event)

    # -------------------------------------------------------------------------
    # Job progress and status
    # -------------------------------------------------------------------------

    async def report_progress(self, job_id: str, percent: float, message: Optional[str] = None) -> int:
        """
        Record job progress. Lower values than the stored one are ignored.

        Returns:
            The stored progress after the update
        """
        percent = int(min(100, max(0, round(percent))))
        async with self._session_maker() as session:
            job = await session.get(Job, job_id)
            if not job:
                raise JobNotFound(job_id)
            if percent > job.progress:
                job.progress = percent
            if message:
                job.message = message
            stored = job.progress
            await session.commit()

        self._publish(job_id, {"type": "progress", "progress": stored, "message": message})
        return stored

    async def mark_processing(self, job_id: str, message: str = "Starting...") -> None:
        await self._transition(job_id, JobStatus.PROCESSING, message=message, started=True)

    async def mark_cancelled(
        self,
        job_id: str,
        message: str = "Job cancelled",
        expected: Optional[JobStatus] = None,
    ) -> None:
        await self._transition(
            job_id, JobStatus.CANCELLED, message=message, completed=True, expected=expected
        )

    async def finalize(
        self,
        job_id: str,
        status: JobStatus,
        message: str,
        output_urls: Optional[List[str]] = None,
        error_summary: Optional[str] = None,
    ) -> None:
        """Move a processing job to COMPLETED or FAILED."""
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise InvalidJobState(f"finalize() cannot set {status.value}")
        await self._transition(
            job_id,
            status,
            message=message,
            completed=True,
            output_urls=output_urls or [],
            error_summary=error_summary,
        )

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        message: Optional[str] = None,
        started: bool = False,
        completed: bool = False,
        output_urls: Optional[List[str]] = None,
        error_summary: Optional[str] = None,
        expected: Optional[JobStatus] = None,
    ) -> None:
        """
        Compare-and-set the job status.

        The write only applies while the row still holds the status that was
        validated, so two racing transitions cannot both succeed.

        Raises:
            InvalidJobState: If the transition is illegal, the job is not in
                ``expected``, or the status changed concurrently
        """
        async with self._session_maker() as session:
            current = await session.scalar(select(Job.status).where(Job.id == job_id))
            if current is None:
                raise JobNotFound(job_id)
            if expected is not None and current != expected:
                raise InvalidJobState(
                    f"Job {job_id} is {current.value}, expected {expected.value}",
                    status=current.value,
                )
            validate_job_transition(current, target)

            values = {"status": target}
            if message:
                values["message"] = message
            if started:
                values["started_at"] = datetime.utcnow()
            if completed:
                values["completed_at"] = datetime.utcnow()
            if output_urls is not None:
                values["output_urls"] = json.dumps(output_urls)
            if error_summary is not None:
                values["error_summary"] = error_summary

            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == current)
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise InvalidJobState(
                    f"Job {job_id} changed state before {current.value} -> {target.value} applied",
                    status=current.value,
                )
            await session.commit()

        logger.info(f"Job {job_id} -> {target.value}" + (f" ({message})" if message else ""))
        self._publish(job_id, {"type": "status", "status": target.value, "message": message})

    async def requeue_for_retry(self, job_id: str) -> int:
        """
        Reset a failed job to QUEUED with a fresh attempt.

        Clip rows go back to PENDING and per-attempt results are cleared.

        Returns:
            The new retry count

        Raises:
            InvalidJobState: If the job is not failed or has no retries left
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(Job).where(Job.id == job_id).options(selectinload(Job.clips))
            )
            job = result.scalar_one_or_none()
            if not job:
                raise JobNotFound(job_id)
            if not can_retry(job.status, job.retry_count, job.max_retries):
                if job.status != JobStatus.FAILED:
                    reason = f"only failed jobs can be retried (status is {job.status.value})"
                else:
                    reason = f"retry limit reached ({job.retry_count}/{job.max_retries})"
                raise InvalidJobState(f"Cannot retry job {job_id}: {reason}", status=job.status.value)

            job.status = JobStatus.QUEUED
            job.retry_count += 1
            job.progress = 0
            job.message = f"Queued for retry ({job.retry_count}/{job.max_retries})"
            job.cancel_requested = False
            job.output_urls = None
            job.error_summary = None
            job.started_at = None
            job.completed_at = None
            for clip in job.clips:
                clip.status = ClipStatus.PENDING
                clip.output_url = None
                clip.thumbnail_url = None
                clip.duration = None
                clip.resolution = None
                clip.file_size = None
                clip.error = None
            retry_count = job.retry_count
            await session.commit()

        logger.info(f"Job {job_id} requeued for retry {retry_count}")
        self._publish(job_id, {"type": "status", "status": JobStatus.QUEUED.value, "message": "retry"})
        return retry_count

    async def is_cancel_requested(self, job_id: str) -> bool:
        """True when the job is flagged for cancellation or already cancelled."""
        async with self._session_maker() as session:
            job = await session.get(Job, job_id)
            return bool(job and (job.cancel_requested or job.status == JobStatus.CANCELLED))

    # -------------------------------------------------------------------------
    # Clip status
    # -------------------------------------------------------------------------

    async def report_clip_status(
        self,
        clip_id: str,
        status: ClipStatus,
        detail: Optional[ClipDetail] = None,
    ) -> None:
        """Record a clip status change, rejecting illegal transitions."""
        async with self._session_maker() as session:
            clip = await session.get(ClipResult, clip_id)
            if not clip:
                raise ValueError(f"Clip {clip_id} not found")
            if not can_transition_clip(clip.status, status):
                raise InvalidJobState(
                    f"Illegal clip transition {clip.status.value} -> {status.value}",
                    status=clip.status.value,
                )

            clip.status = status
            if detail is not None:
                for field_name in ("output_url", "thumbnail_url", "duration", "resolution", "file_size", "error"):
                    value = getattr(detail, field_name)
                    if value is not None:
                        setattr(clip, field_name, value)
            job_id = clip.job_id
            await session.commit()

        self._publish(job_id, {
            "type": "clip",
            "clip_id": clip_id,
            "status": status.value,
            "error": detail.error if detail else None,
        })
