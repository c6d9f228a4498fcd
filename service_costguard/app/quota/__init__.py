"""Usage quotas tied to subscription tier."""

from .plans import DINER_LIMITS, PlanLimits, Tier, get_plan_limits
from .usage_tracker import (
    UsageQuotaTracker,
    UsageRecord,
    UsageStatus,
    normalize_usage_record,
)

__all__ = [
    "DINER_LIMITS",
    "PlanLimits",
    "Tier",
    "get_plan_limits",
    "UsageQuotaTracker",
    "UsageRecord",
    "UsageStatus",
    "normalize_usage_record",
]
