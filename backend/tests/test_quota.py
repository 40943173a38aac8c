"""Tests for plan quotas."""
from datetime import datetime

import pytest

from clipforge.errors import QuotaExceeded
from clipforge.models.usage import Subscription, UsageRecord
from clipforge.services.quota_service import QuotaGate, UsageCounts, limit_warnings, period_starts

NOW = datetime(2026, 3, 20, 12, 0, 0)


async def _add_usage(session_maker, owner_id, count, created_at):
    async with session_maker() as session:
        for i in range(count):
            session.add(UsageRecord(owner_id=owner_id, job_id=f"job{i}", clips_requested=1, created_at=created_at))
        await session.commit()


def test_period_starts():
    day_start, month_start = period_starts(NOW)
    assert day_start == datetime(2026, 3, 20)
    assert month_start == datetime(2026, 3, 1)


class TestQuotaGate:
    """Tests for QuotaGate.check_and_reserve."""

    @pytest.mark.asyncio
    async def test_free_plan_allows_three_per_day(self, session_maker, plans):
        await _add_usage(session_maker, "alice", 2, NOW)
        async with session_maker() as session:
            limits = await QuotaGate(session, plans).check_and_reserve("alice", "free", 1, now=NOW)
        assert limits.plan_code == "free"

    @pytest.mark.asyncio
    async def test_fourth_job_of_the_day_rejected(self, session_maker, plans):
        await _add_usage(session_maker, "alice", 3, NOW.replace(hour=1))
        async with session_maker() as session:
            with pytest.raises(QuotaExceeded) as exc_info:
                await QuotaGate(session, plans).check_and_reserve("alice", "free", 1, now=NOW)

        error = exc_info.value
        assert error.period == "daily"
        assert error.code == "DAILY_LIMIT_EXCEEDED"
        assert (error.limit, error.used) == (3, 3)

    @pytest.mark.asyncio
    async def test_yesterday_does_not_count_toward_daily(self, session_maker, plans):
        await _add_usage(session_maker, "alice", 3, datetime(2026, 3, 19, 23, 59))
        async with session_maker() as session:
            gate = QuotaGate(session, plans)
            await gate.check_and_reserve("alice", "free", 1, now=NOW)
            counts = await gate.usage_counts("alice", now=NOW)
        assert counts == UsageCounts(daily=0, monthly=3)

    @pytest.mark.asyncio
    async def test_monthly_limit(self, session_maker, plans):
        await _add_usage(session_maker, "bob", 15, datetime(2026, 3, 2, 10))
        async with session_maker() as session:
            with pytest.raises(QuotaExceeded) as exc_info:
                await QuotaGate(session, plans).check_and_reserve("bob", "free", 1, now=NOW)
        assert exc_info.value.code == "MONTHLY_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_previous_month_ignored(self, session_maker, plans):
        await _add_usage(session_maker, "bob", 15, datetime(2026, 2, 27, 10))
        async with session_maker() as session:
            await QuotaGate(session, plans).check_and_reserve("bob", "free", 1, now=NOW)

    @pytest.mark.asyncio
    async def test_unlimited_plan_never_rejects(self, session_maker, plans):
        await _add_usage(session_maker, "carol", 120, NOW)
        async with session_maker() as session:
            limits = await QuotaGate(session, plans).check_and_reserve(
                "carol", "viral_enterprise_monthly", 50, now=NOW
            )
        assert limits.daily_clip_limit == -1

    @pytest.mark.asyncio
    async def test_other_owners_do_not_count(self, session_maker, plans):
        await _add_usage(session_maker, "someone-else", 5, NOW)
        async with session_maker() as session:
            await QuotaGate(session, plans).check_and_reserve("alice", "free", 1, now=NOW)

    @pytest.mark.asyncio
    async def test_record_usage_counts_next_check(self, session_maker, plans):
        async with session_maker() as session:
            gate = QuotaGate(session, plans)
            gate.record_usage("dave", "job-a", 4)
            await session.commit()
            counts = await gate.usage_counts("dave")
        assert counts.daily == 1


class TestPlanLookup:
    @pytest.mark.asyncio
    async def test_subscription_plan(self, session_maker, plans):
        async with session_maker() as session:
            session.add(Subscription(owner_id="erin", plan_code="viral_pro_monthly"))
            session.add(Subscription(owner_id="frank", plan_code="viral_pro_monthly", status="cancelled"))
            await session.commit()

            gate = QuotaGate(session, plans)
            assert await gate.plan_for_owner("erin") == "viral_pro_monthly"
            assert await gate.plan_for_owner("frank") == "free"
            assert await gate.plan_for_owner("nobody") == "free"

    @pytest.mark.asyncio
    async def test_usage_summary_warns_near_limit(self, session_maker, plans):
        await _add_usage(session_maker, "gina", 3, NOW)
        async with session_maker() as session:
            summary = await QuotaGate(session, plans).usage_summary("gina", now=NOW)

        assert summary["clips_today"] == 3
        assert summary["plan"]["plan_code"] == "free"
        assert len(summary["warnings"]) == 1
        assert "3/3 daily" in summary["warnings"][0]


def test_limit_warnings_ignore_unlimited(plans):
    limits = plans.get("viral_enterprise_monthly")
    assert limit_warnings(limits, UsageCounts(daily=1000, monthly=10000)) == []
