"""Plan-based clip quotas."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.errors import QuotaExceeded
from clipforge.models.usage import Subscription, UsageRecord
from clipforge.pipeline.plans import PlanCatalog, PlanLimits, UNLIMITED

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_PERCENT = 80


@dataclass
class UsageCounts:
    daily: int
    monthly: int


def period_starts(now: datetime):
    """Start of the current UTC day and month."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = day_start.replace(day=1)
    return day_start, month_start


class QuotaGate:
    """
    Checks an owner's usage against plan limits.

    The check is read-only; ``record_usage`` writes the counter when a job is
    created. The two are not atomic across processes: callers that need
    stronger guarantees must serialize check and record themselves.
    """

    def __init__(self, db: AsyncSession, plans: PlanCatalog):
        self.db = db
        self.plans = plans

    async def plan_for_owner(self, owner_id: str) -> str:
        """Active plan code for an owner, or the catalog default."""
        subscription = await self.db.get(Subscription, owner_id)
        if subscription is None or not subscription.is_active:
            return self.plans.default_code
        return subscription.plan_code

    async def usage_counts(self, owner_id: str, now: Optional[datetime] = None) -> UsageCounts:
        now = now or datetime.utcnow()
        day_start, month_start = period_starts(now)

        daily = await self.db.scalar(
            select(func.count(UsageRecord.id)).where(
                UsageRecord.owner_id == owner_id,
                UsageRecord.created_at >= day_start,
            )
        )
        monthly = await self.db.scalar(
            select(func.count(UsageRecord.id)).where(
                UsageRecord.owner_id == owner_id,
                UsageRecord.created_at >= month_start,
            )
        )
        return UsageCounts(daily=daily or 0, monthly=monthly or 0)

    async def check_and_reserve(
        self,
        owner_id: str,
        plan_code: str,
        requested_clip_count: int,
        now: Optional[datetime] = None,
    ) -> PlanLimits:
        """
        Check whether the owner may submit another job.

        Args:
            owner_id: Owner of the job
            plan_code: Owner's plan code
            requested_clip_count: Number of segments in the submission

        Returns:
            The plan limits that apply to the job

        Raises:
            QuotaExceeded: If the daily or monthly limit is reached
        """
        limits = self.plans.get(plan_code)
        usage = await self.usage_counts(owner_id, now)

        if limits.daily_clip_limit != UNLIMITED and usage.daily >= limits.daily_clip_limit:
            logger.info(
                f"Quota rejected for {owner_id}: daily {usage.daily}/{limits.daily_clip_limit} "
                f"({requested_clip_count} clips requested)"
            )
            raise QuotaExceeded("daily", limits.daily_clip_limit, usage.daily)

        if limits.monthly_clip_limit != UNLIMITED and usage.monthly >= limits.monthly_clip_limit:
            logger.info(
                f"Quota rejected for {owner_id}: monthly {usage.monthly}/{limits.monthly_clip_limit} "
                f"({requested_clip_count} clips requested)"
            )
            raise QuotaExceeded("monthly", limits.monthly_clip_limit, usage.monthly)

        return limits

    def record_usage(self, owner_id: str, job_id: str, clips_requested: int) -> UsageRecord:
        """Add the usage counter row for a new job to the current session."""
        record = UsageRecord(owner_id=owner_id, job_id=job_id, clips_requested=clips_requested)
        self.db.add(record)
        return record

    async def usage_summary(self, owner_id: str, now: Optional[datetime] = None) -> dict:
        """Usage counts, limits and warnings for an owner."""
        plan_code = await self.plan_for_owner(owner_id)
        limits = self.plans.get(plan_code)
        usage = await self.usage_counts(owner_id, now)
        return {
            "owner_id": owner_id,
            "plan": limits.to_dict(),
            "clips_today": usage.daily,
            "clips_this_month": usage.monthly,
            "warnings": limit_warnings(limits, usage),
        }


def limit_warnings(limits: PlanLimits, usage: UsageCounts) -> List[str]:
    """Warnings once usage reaches 80% of a limit."""
    warnings = []
    if limits.daily_clip_limit != UNLIMITED and limits.daily_clip_limit > 0:
        percent = usage.daily / limits.daily_clip_limit * 100
        if percent >= WARNING_THRESHOLD_PERCENT:
            warnings.append(
                f"You've used {usage.daily}/{limits.daily_clip_limit} daily clips ({round(percent)}%)"
            )
    if limits.monthly_clip_limit != UNLIMITED and limits.monthly_clip_limit > 0:
        percent = usage.monthly / limits.monthly_clip_limit * 100
        if percent >= WARNING_THRESHOLD_PERCENT:
            warnings.append(
                f"You've used {usage.monthly}/{limits.monthly_clip_limit} monthly clips ({round(percent)}%)"
            )
    return warnings
