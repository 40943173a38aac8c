"""Background job runner using asyncio."""
import asyncio
import itertools
import logging
import traceback
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.models.job import Job
from clipforge.pipeline.state import JobStatus

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable]


class JobRunner:
    """
    Async worker pool fed by a priority queue.

    Higher ``priority`` runs first; equal priorities run in submission order.
    Each job is handled by exactly one worker at a time.
    """

    def __init__(self, handler: JobHandler, worker_count: int = 1):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._handler = handler
        self._worker_count = worker_count
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._counter = itertools.count()
        self._workers: List[asyncio.Task] = []
        self._pending: set = set()
        self._running_jobs: Dict[str, asyncio.Task] = {}

    @property
    def started(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawn the worker tasks."""
        if self._workers:
            return
        for i in range(self._worker_count):
            self._workers.append(asyncio.create_task(self._worker(i), name=f"job-worker-{i}"))
        logger.info(f"Job runner started with {self._worker_count} worker(s)")

    def submit(self, job_id: str, priority: int = 0) -> bool:
        """
        Queue a job for execution.

        Returns:
            False if the job is already queued or running
        """
        if job_id in self._pending or job_id in self._running_jobs:
            logger.warning(f"Job {job_id} is already queued or running")
            return False
        self._pending.add(job_id)
        self._queue.put_nowait((-priority, next(self._counter), job_id))
        return True

    async def recover(self, session_maker: async_sessionmaker) -> int:
        """Re-queue jobs left QUEUED by a previous process."""
        async with session_maker() as session:
            result = await session.execute(
                select(Job.id, Job.priority)
                .where(Job.status == JobStatus.QUEUED)
                .order_by(Job.created_at)
            )
            rows = result.all()
        count = sum(1 for job_id, priority in rows if self.submit(job_id, priority))
        if count:
            logger.info(f"Recovered {count} queued job(s)")
        return count

    async def _worker(self, worker_index: int):
        while True:
            _, _, job_id = await self._queue.get()
            self._pending.discard(job_id)
            task = asyncio.create_task(self._run_job(job_id))
            self._running_jobs[job_id] = task
            try:
                await task
            except asyncio.CancelledError:
                if not task.done():
                    task.cancel()
                raise
            finally:
                self._running_jobs.pop(job_id, None)
                self._queue.task_done()

    async def _run_job(self, job_id: str):
        """Run the handler, logging anything it lets escape."""
        try:
            status = await self._handler(job_id)
            logger.info(f"Job {job_id} finished: {status.value if status else 'skipped'}")
        except asyncio.CancelledError:
            logger.info(f"Job {job_id} was cancelled")
            raise
        except Exception as e:
            logger.error(f"Job {job_id} crashed: {e}\n{traceback.format_exc()}")

    def is_job_running(self, job_id: str) -> bool:
        """Check if a job is currently running."""
        return job_id in self._running_jobs

    def queued_count(self) -> int:
        return self._queue.qsize()

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every submitted job has been handled."""
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def shutdown(self):
        """Cancel running jobs and stop the workers."""
        running = list(self._running_jobs.values())
        for task in running:
            task.cancel()
        for worker in self._workers:
            worker.cancel()

        await asyncio.gather(*running, *self._workers, return_exceptions=True)

        self._workers.clear()
        self._running_jobs.clear()
        logger.info("Job runner stopped")
