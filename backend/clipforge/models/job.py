"""Job and clip result models."""
import json
import uuid
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from clipforge.db.database import Base
from clipforge.pipeline.state import ClipStatus, JobStatus


def _new_id() -> str:
    return uuid.uuid4().hex


class Job(Base):
    """A clip-generation job: one source, many segments."""

    __tablename__ = "jobs"

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_id = Column(String(255), nullable=False, index=True)
    plan_code = Column(String(64), nullable=False)

    # Request
    source_ref = Column(String(4096), nullable=False)
    options = Column(Text, nullable=False)  # ProcessingOptions JSON
    segments = Column(Text, nullable=False)  # List[ClipSegment] JSON

    # Status
    status = Column(Enum(JobStatus), default=JobStatus.QUEUED, nullable=False, index=True)
    progress = Column(Integer, default=0, nullable=False)  # 0 to 100, never decreases per attempt
    message = Column(String(1024), nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, default=0, nullable=False)  # Higher runs first

    # Retry bookkeeping
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)

    # Results/errors
    output_urls = Column(Text, nullable=True)  # JSON list
    error_summary = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    clips = relationship(
        "ClipResult",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ClipResult.index",
    )

    def __repr__(self):
        return f"<Job(id={self.id}, owner={self.owner_id}, status={self.status})>"

    @property
    def output_url_list(self) -> list:
        return json.loads(self.output_urls) if self.output_urls else []

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "plan_code": self.plan_code,
            "source_ref": self.source_ref,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "output_urls": self.output_url_list,
            "error_summary": self.error_summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ClipResult(Base):
    """Per-segment outcome of a job."""

    __tablename__ = "clip_results"

    id = Column(String(32), primary_key=True, default=_new_id)
    job_id = Column(String(32), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    index = Column(Integer, nullable=False)  # Submission order

    # Segment
    title = Column(String(255), nullable=True)
    platform = Column(String(64), nullable=False)
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)

    # Outcome
    status = Column(Enum(ClipStatus), default=ClipStatus.PENDING, nullable=False)
    output_url = Column(String(4096), nullable=True)
    thumbnail_url = Column(String(4096), nullable=True)
    duration = Column(Float, nullable=True)
    resolution = Column(String(32), nullable=True)
    file_size = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="clips")

    def __repr__(self):
        return f"<ClipResult(id={self.id}, job={self.job_id}, index={self.index}, status={self.status})>"

    def to_dict(self):
        return {
            "id": self.id,
            "index": self.index,
            "title": self.title,
            "platform": self.platform,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "output_url": self.output_url,
            "thumbnail_url": self.thumbnail_url,
            "metadata": {
                "duration": self.duration,
                "resolution": self.resolution,
                "file_size": self.file_size,
            },
            "error": self.error,
        }
