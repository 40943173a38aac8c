"""
State transitions for jobs and clips, and the per-segment batch step.

Job lifecycle: QUEUED -> PROCESSING -> COMPLETED | FAILED | CANCELLED.
QUEUED may also go straight to CANCELLED. Terminal states never change,
except the explicit retry path FAILED -> QUEUED.

Clip lifecycle: PENDING -> PROCESSING -> COMPLETED | FAILED.
"""
import enum
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Set, Tuple

from clipforge.errors import InvalidJobState


class JobStatus(str, enum.Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ClipStatus(str, enum.Enum):
    """Clip status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

CANCELLABLE_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.QUEUED,
    JobStatus.PROCESSING,
})

_JOB_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.QUEUED, JobStatus.PROCESSING),
    (JobStatus.QUEUED, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),
}

RETRY_TRANSITION = (JobStatus.FAILED, JobStatus.QUEUED)

_CLIP_TRANSITIONS: Set[Tuple[ClipStatus, ClipStatus]] = {
    (ClipStatus.PENDING, ClipStatus.PROCESSING),
    (ClipStatus.PENDING, ClipStatus.FAILED),
    (ClipStatus.PROCESSING, ClipStatus.COMPLETED),
    (ClipStatus.PROCESSING, ClipStatus.FAILED),
}


def is_job_terminal(status: JobStatus) -> bool:
    return JobStatus(status) in TERMINAL_JOB_STATES


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    return (JobStatus(current), JobStatus(target)) in _JOB_TRANSITIONS


def validate_job_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition_job(current, target):
        raise InvalidJobState(
            f"Illegal job transition {JobStatus(current).value} -> {JobStatus(target).value}",
            status=JobStatus(current).value,
        )


def can_transition_clip(current: ClipStatus, target: ClipStatus) -> bool:
    return (ClipStatus(current), ClipStatus(target)) in _CLIP_TRANSITIONS


def can_retry(status: JobStatus, retry_count: int, max_retries: int) -> bool:
    return JobStatus(status) == JobStatus.FAILED and retry_count < max_retries


def can_cancel(status: JobStatus) -> bool:
    return JobStatus(status) in CANCELLABLE_JOB_STATES


# =============================================================================
# Batch step function
# =============================================================================

@dataclass(frozen=True)
class SegmentOutcome:
    """Terminal result of one segment attempt."""
    index: int
    succeeded: bool
    title: str = ""
    cause: Optional[str] = None


@dataclass(frozen=True)
class BatchState:
    """Running tally of a job's segment loop."""
    total: int
    completed: int = 0
    failed: int = 0
    progress: int = 0
    failures: Tuple[SegmentOutcome, ...] = ()

    @property
    def done(self) -> int:
        return self.completed + self.failed

    @property
    def remaining(self) -> int:
        return self.total - self.done


def batch_progress(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(done / total * 100)


def advance(state: BatchState, outcome: SegmentOutcome) -> Tuple[BatchState, int]:
    """
    Fold one segment outcome into the batch.

    Returns:
        (next_state, progress_delta) where progress_delta >= 0
    """
    if state.done >= state.total:
        raise ValueError("Batch already has an outcome for every segment")

    if outcome.succeeded:
        next_state = replace(state, completed=state.completed + 1)
    else:
        next_state = replace(
            state,
            failed=state.failed + 1,
            failures=state.failures + (outcome,),
        )

    progress = max(state.progress, batch_progress(next_state.done, next_state.total))
    next_state = replace(next_state, progress=progress)
    return next_state, progress - state.progress


def final_status(state: BatchState) -> JobStatus:
    """COMPLETED if at least one clip succeeded, else FAILED."""
    return JobStatus.COMPLETED if state.completed > 0 else JobStatus.FAILED


def summarize(state: BatchState) -> str:
    """Human-readable batch summary, e.g. '4 of 5 clips generated; 1 failed: ...'."""
    summary = f"{state.completed} of {state.total} clips generated"
    if state.failures:
        details = "; ".join(
            f"clip {f.index + 1}" + (f" '{f.title}'" if f.title else "") + f": {f.cause or 'unknown error'}"
            for f in state.failures
        )
        summary += f"; {len(state.failures)} failed: {details}"
    return summary
