"""Subscription plan limits."""
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from clipforge.pipeline.options import Resolution

UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    """Quota and quality ceilings for one subscription tier."""
    plan_code: str
    max_resolution: Resolution
    watermark_enabled: bool  # Forces the watermark on regardless of the request
    daily_clip_limit: int
    monthly_clip_limit: int
    priority_hint: bool
    max_source_size_mb: int = UNLIMITED

    def allows_source_size(self, size_bytes: int) -> bool:
        if self.max_source_size_mb == UNLIMITED:
            return True
        return size_bytes <= self.max_source_size_mb * 1024 * 1024

    def to_dict(self) -> dict:
        data = asdict(self)
        data["max_resolution"] = self.max_resolution.value
        return data


DEFAULT_PLANS: Dict[str, PlanLimits] = {
    "free": PlanLimits(
        plan_code="free",
        max_resolution=Resolution.P720,
        watermark_enabled=True,
        daily_clip_limit=3,
        monthly_clip_limit=15,
        priority_hint=False,
        max_source_size_mb=100,
    ),
    "viral_starter_monthly": PlanLimits(
        plan_code="viral_starter_monthly",
        max_resolution=Resolution.P1080,
        watermark_enabled=False,
        daily_clip_limit=10,
        monthly_clip_limit=100,
        priority_hint=False,
        max_source_size_mb=250,
    ),
    "viral_pro_monthly": PlanLimits(
        plan_code="viral_pro_monthly",
        max_resolution=Resolution.P1080,
        watermark_enabled=False,
        daily_clip_limit=50,
        monthly_clip_limit=500,
        priority_hint=True,
        max_source_size_mb=500,
    ),
    "viral_enterprise_monthly": PlanLimits(
        plan_code="viral_enterprise_monthly",
        max_resolution=Resolution.UHD_4K,
        watermark_enabled=False,
        daily_clip_limit=UNLIMITED,
        monthly_clip_limit=UNLIMITED,
        priority_hint=True,
        max_source_size_mb=1000,
    ),
}


class PlanCatalog:
    """Resolves plan codes to limits; unknown codes fall back to the default plan."""

    def __init__(self, plans: Optional[Dict[str, PlanLimits]] = None, default_code: str = "free"):
        self._plans = dict(plans or DEFAULT_PLANS)
        if default_code not in self._plans:
            raise ValueError(f"Default plan {default_code!r} is not in the catalog")
        self.default_code = default_code

    def get(self, plan_code: Optional[str]) -> PlanLimits:
        if plan_code and plan_code in self._plans:
            return self._plans[plan_code]
        return self._plans[self.default_code]

    def codes(self):
        return list(self._plans)
