"""Usage, credit and subscription models."""
from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from clipforge.db.database import Base


class UsageRecord(Base):
    """One row per accepted job; the owner's quota counters."""

    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    job_id = Column(String(32), nullable=True)
    clips_requested = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<UsageRecord(owner={self.owner_id}, job={self.job_id}, clips={self.clips_requested})>"


class CreditLedgerEntry(Base):
    """Credits charged for one finalized job attempt."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("job_id", "attempt", name="uq_credit_ledger_job_attempt"),
    )

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    job_id = Column(String(32), nullable=False)
    attempt = Column(Integer, default=0, nullable=False)  # Job.retry_count at finalization
    credits = Column(Integer, nullable=False)
    reason = Column(String(64), default="video_processing", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<CreditLedgerEntry(job={self.job_id}, attempt={self.attempt}, credits={self.credits})>"


class Subscription(Base):
    """Owner's active plan; owners without one are on the default plan."""

    __tablename__ = "subscriptions"

    owner_id = Column(String(255), primary_key=True)
    plan_code = Column(String(64), nullable=False)
    status = Column(String(32), default="active", nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status == "active"
