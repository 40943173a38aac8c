# Models module
from clipforge.models.job import Job, ClipResult
from clipforge.models.usage import UsageRecord, CreditLedgerEntry, Subscription

__all__ = ["Job", "ClipResult", "UsageRecord", "CreditLedgerEntry", "Subscription"]
