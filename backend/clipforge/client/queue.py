"""Polling client for the job API.

Keeps a local view of the owner's jobs, reconciled from the server by polling.
Updates are merged idempotently and a terminal job never moves back to a
non-terminal state in the local view, except through an explicit retry.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Union

import httpx

from clipforge.errors import ClipForgeError, InvalidJobState, JobNotFound, QuotaExceeded
from clipforge.pipeline.options import JobSubmission
from clipforge.pipeline.state import JobStatus, can_cancel, can_retry, is_job_terminal

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


class QueueClientError(ClipForgeError):
    """Unexpected response from the job API."""

    kind = "queue_client_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class JobView:
    """Client-side snapshot of one job."""
    job_id: str
    status: JobStatus
    progress_percent: int = 0
    retry_count: int = 0
    max_retries: int = 3
    message: Optional[str] = None
    output_urls: List[str] = field(default_factory=list)
    error_summary: Optional[str] = None
    clip_results: List[dict] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return is_job_terminal(self.status)

    @classmethod
    def from_payload(cls, payload: dict) -> "JobView":
        return cls(
            job_id=payload["job_id"],
            status=JobStatus(payload["status"]),
            progress_percent=int(payload.get("progress_percent", 0)),
            retry_count=int(payload.get("retry_count", 0)),
            max_retries=int(payload.get("max_retries", 3)),
            message=payload.get("message"),
            output_urls=list(payload.get("output_urls") or []),
            error_summary=payload.get("error_summary"),
            clip_results=list(payload.get("clip_results") or []),
        )


def reconcile(current: Optional[JobView], incoming: JobView) -> JobView:
    """
    Merge a server snapshot into the local view.

    - a newer attempt (higher retry_count) always wins
    - within one attempt, a terminal local state is kept
    - within one attempt and status, progress never decreases
    """
    if current is None or incoming.retry_count > current.retry_count:
        return incoming
    if incoming.retry_count < current.retry_count:
        return current
    if current.is_terminal and incoming.status != current.status:
        return current
    if incoming.status == current.status and incoming.progress_percent < current.progress_percent:
        incoming.progress_percent = current.progress_percent
    return incoming


class JobQueueClient:
    """
    Async HTTP client for submitting, cancelling, retrying and watching jobs.

    Usage:
        async with JobQueueClient("http://localhost:8000", owner_id="user-1") as queue:
            job_id = await queue.add_job(submission)
            async for view in queue.watch(job_id):
                print(view.status, view.progress_percent)
    """

    def __init__(
        self,
        base_url: str,
        owner_id: str,
        poll_interval: float = 2.0,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.owner_id = owner_id
        self.poll_interval = poll_interval
        self.jobs: Dict[str, JobView] = {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-Owner-Id": owner_id},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "JobQueueClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def add_job(self, submission: Union[JobSubmission, dict]) -> str:
        """
        Submit a job.

        Returns:
            The new job id

        Raises:
            QuotaExceeded: If the owner's plan limit is reached
        """
        if not isinstance(submission, JobSubmission):
            submission = JobSubmission.model_validate(submission)

        response = await self._request("POST", "/api/jobs", json=submission.model_dump(mode="json"))
        if response.status_code == 429:
            body = response.json()
            period = "daily" if body.get("code") == "DAILY_LIMIT_EXCEEDED" else "monthly"
            raise QuotaExceeded(period, int(body.get("limit", 0)), int(body.get("used", 0)))
        self._raise_for_status(response)

        job_id = response.json()["job_id"]
        await self.get_job(job_id)
        return job_id

    async def get_job(self, job_id: str) -> JobView:
        response = await self._request("GET", f"/api/jobs/{job_id}")
        self._raise_for_status(response, job_id)
        return self._merge(JobView.from_payload(response.json()))

    async def cancel_job(self, job_id: str) -> JobView:
        """
        Cancel a queued or processing job.

        Raises:
            InvalidJobState: If the freshly polled job is already terminal
        """
        view = await self.get_job(job_id)
        if not can_cancel(view.status):
            raise InvalidJobState(
                f"Cannot cancel job {job_id} in status {view.status.value}",
                status=view.status.value,
            )

        response = await self._request("POST", f"/api/jobs/{job_id}/cancel")
        self._raise_for_status(response, job_id)
        return self._merge(JobView.from_payload(response.json()))

    async def retry_job(self, job_id: str) -> JobView:
        """
        Requeue a failed job with retries left.

        Raises:
            InvalidJobState: If the freshly polled job is not failed or has used all retries
        """
        view = await self.get_job(job_id)
        if not can_retry(view.status, view.retry_count, view.max_retries):
            raise InvalidJobState(
                f"Cannot retry job {job_id} (status {view.status.value}, "
                f"retries {view.retry_count}/{view.max_retries})",
                status=view.status.value,
            )

        response = await self._request("POST", f"/api/jobs/{job_id}/retry")
        self._raise_for_status(response, job_id)
        return self._merge(JobView.from_payload(response.json()))

    async def refresh(self, limit: int = 50) -> List[JobView]:
        """Reconcile the local view with the owner's recent jobs."""
        response = await self._request("GET", "/api/jobs", params={"limit": limit})
        self._raise_for_status(response)
        return [self._merge(JobView.from_payload(item)) for item in response.json()]

    async def watch(self, job_id: str, timeout: Optional[float] = None) -> AsyncIterator[JobView]:
        """
        Poll one job until it is terminal, yielding each changed view.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        last = None

        while True:
            view = await self.get_job(job_id)
            snapshot = (view.status, view.progress_percent, view.retry_count, view.message)
            if snapshot != last:
                last = snapshot
                yield view
            if view.is_terminal:
                return
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError(f"Job {job_id} still {view.status.value}")
            await asyncio.sleep(self.poll_interval)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobView:
        """Block until the job is terminal and return its final view."""
        view = None
        async for view in self.watch(job_id, timeout=timeout):
            pass
        return view

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _merge(self, incoming: JobView) -> JobView:
        merged = reconcile(self.jobs.get(incoming.job_id), incoming)
        self.jobs[incoming.job_id] = merged
        return merged

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise QueueClientError(f"{method} {url} timed out") from exc
        except httpx.RequestError as exc:
            raise QueueClientError(f"Unable to reach job API: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, job_id: Optional[str] = None) -> None:
        if response.status_code < 400:
            return
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        if response.status_code == 404 and job_id is not None:
            raise JobNotFound(job_id)
        if response.status_code == 409:
            raise InvalidJobState(str(detail))
        raise QueueClientError(f"HTTP {response.status_code}: {detail}", status_code=response.status_code)
