"""
Subscription plan limits for diners.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class Tier(str, Enum):
    """Subscription tiers that gate AI usage."""
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class PlanLimits:
    """Monthly allowances; ``None`` means unlimited."""
    ai_checks_per_month: Optional[int]
    priority_reservations: bool = False
    exclusive_deals: bool = False


DINER_LIMITS: Dict[Tier, PlanLimits] = {
    Tier.FREE: PlanLimits(ai_checks_per_month=5),
    Tier.PREMIUM: PlanLimits(ai_checks_per_month=None, priority_reservations=True, exclusive_deals=True),
}


def get_plan_limits(tier: Tier, free_allowance: Optional[int] = None) -> PlanLimits:
    """Limits for ``tier``, with an optional override of the free allowance."""
    limits = DINER_LIMITS.get(tier, DINER_LIMITS[Tier.FREE])
    if tier == Tier.FREE and free_allowance is not None:
        return PlanLimits(
            ai_checks_per_month=free_allowance,
            priority_reservations=limits.priority_reservations,
            exclusive_deals=limits.exclusive_deals,
        )
    return limits


def remaining_checks(limits: PlanLimits, used: int) -> Optional[int]:
    if limits.ai_checks_per_month is None:
        return None
    return max(0, limits.ai_checks_per_month - used)


def can_use_ai_check(limits: PlanLimits, used: int) -> bool:
    return limits.ai_checks_per_month is None or used < limits.ai_checks_per_month
