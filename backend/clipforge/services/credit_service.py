"""Credit ledger for finalized job attempts."""
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.models.usage import CreditLedgerEntry

logger = logging.getLogger(__name__)


class CreditLedger:
    """Charges credits at most once per (job, attempt)."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def charge(self, owner_id: str, job_id: str, attempt: int, credits: int) -> bool:
        """
        Record the credits used by one finalized attempt.

        Returns:
            True if an entry was written, False if the attempt was already charged
        """
        async with self._session_maker() as session:
            session.add(CreditLedgerEntry(
                owner_id=owner_id,
                job_id=job_id,
                attempt=attempt,
                credits=credits,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Credits for job {job_id} attempt {attempt} already charged")
                return False

        logger.info(f"Charged {credits} credits to {owner_id} for job {job_id} (attempt {attempt})")
        return True

    async def total_for_owner(self, owner_id: str) -> int:
        async with self._session_maker() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(CreditLedgerEntry.credits), 0)).where(
                    CreditLedgerEntry.owner_id == owner_id
                )
            )
            return int(total or 0)
