"""Error types raised across the clip pipeline.

Each error carries a stable ``kind`` so clip and job records can store the
cause without keeping exception objects around.
"""
from typing import Optional


class ClipForgeError(Exception):
    """Base class for pipeline errors."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


class QuotaExceeded(ClipForgeError):
    """Plan limit reached for the current day or month. Never retried."""

    kind = "quota_exceeded"

    def __init__(self, period: str, limit: int, used: int):
        self.period = period
        self.limit = limit
        self.used = used
        if period == "daily":
            message = f"Daily limit reached ({limit} clips). Try again tomorrow or upgrade your plan."
        else:
            message = f"Monthly limit reached ({limit} clips). Upgrade your plan for more clips."
        super().__init__(message)

    @property
    def code(self) -> str:
        return "DAILY_LIMIT_EXCEEDED" if self.period == "daily" else "MONTHLY_LIMIT_EXCEEDED"


class SourceUnavailable(ClipForgeError):
    """Source video could not be acquired. Fatal to the job."""

    kind = "source_unavailable"


class InvalidSegment(ClipForgeError):
    """Segment cannot be rendered for its platform. Fails only that clip."""

    kind = "invalid_segment"


class EncodeFailure(ClipForgeError):
    """Encoder failed or timed out for one clip."""

    kind = "encode_failure"


class UploadFailure(ClipForgeError):
    """Encoded clip could not be stored."""

    kind = "upload_failure"


class AnalyzerFailure(ClipForgeError):
    """Subject tracking failed; callers fall back to a centered crop."""

    kind = "analyzer_failure"


class JobNotFound(ClipForgeError):
    kind = "job_not_found"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidJobState(ClipForgeError):
    """Requested operation is not allowed in the job's current status."""

    kind = "invalid_job_state"

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message)
