"""
AI match scoring behind the cost-control layer.

Order of checks: rate limit, then usage quota (both fail fast), then the
score cache, then a coalesced call to the scoring provider. A cache miss
that yields a score is charged against the user's allowance, including a
miss served by a generation another request started; cache hits are free.
"""

import hashlib
import json
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from shared.logging import get_logger
from ..adapters.scoring_client import ScoringClient
from ..caching.ttl_cache import TTLCache, CacheDurations
from ..fetching.single_flight import SingleFlight
from ..quota.usage_tracker import UsageQuotaTracker, UsageStatus
from ..ratelimit.fixed_window import FixedWindowRateLimiter, RateLimitPolicy, RateLimitResult

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.background import BackgroundTaskRunner


SCORES_NAMESPACE = "restaurant_scores"


class ScoreStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    LIMIT_REACHED = "limit_reached"
    UNAVAILABLE = "unavailable"


@dataclass
class ScoreOutcome:
    status: ScoreStatus
    score: Optional[Dict[str, Any]] = None
    cached: bool = False
    usage: Optional[UsageStatus] = None
    rate_limit: Optional[RateLimitResult] = None


def dietary_hash(dietary: Dict[str, Any]) -> str:
    """Stable digest of a dietary profile, independent of key order."""
    canonical = json.dumps(dietary, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def score_cache_key(place_id: str, dietary: Dict[str, Any]) -> str:
    return f"{place_id}_{dietary_hash(dietary)}"


class ScoreService:
    """Gated, cached, coalesced access to the scoring provider."""

    def __init__(
        self,
        cache: TTLCache,
        rate_limiter: FixedWindowRateLimiter,
        usage_tracker: UsageQuotaTracker,
        scoring_client: ScoringClient,
        *,
        rate_policy: RateLimitPolicy,
        single_flight: Optional[SingleFlight] = None,
        background: Optional["BackgroundTaskRunner"] = None,
        ttl_ms: int = CacheDurations.GEMINI_SCORES,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.usage_tracker = usage_tracker
        self.scoring_client = scoring_client
        self.rate_policy = rate_policy
        self.single_flight = single_flight or SingleFlight("score_fetch")
        self.background = background
        self.ttl_ms = ttl_ms
        self.logger = get_logger("costguard.scoring")

    async def score(
        self,
        user_id: str,
        place_id: str,
        name: str,
        dietary: Dict[str, Any],
        reviews: Optional[List[str]] = None,
    ) -> ScoreOutcome:
        rate_result = await self.rate_limiter.enforce(self.rate_policy, user_id)
        if rate_result.limit_reached:
            return ScoreOutcome(ScoreStatus.RATE_LIMITED, rate_limit=rate_result)

        usage = await self.usage_tracker.check_limit(user_id)
        if usage.limit_reached:
            return ScoreOutcome(ScoreStatus.LIMIT_REACHED, usage=usage, rate_limit=rate_result)
        if not usage.persisted and not usage.degraded and self.background is not None:
            self.background.spawn(self.usage_tracker.ensure_record(user_id), label="usage_init")

        key = score_cache_key(place_id, dietary)
        cached = await self.cache.get(SCORES_NAMESPACE, key)
        if cached is not None:
            self.logger.debug("Score cache hit", place_id=place_id)
            return ScoreOutcome(ScoreStatus.OK, score=cached, cached=True, usage=usage, rate_limit=rate_result)

        async def _generate() -> Dict[str, Any]:
            result = await self.scoring_client.score_place(place_id, name, dietary, reviews)
            await self.cache.set(SCORES_NAMESPACE, key, result, ttl_ms=self.ttl_ms, updated_by=user_id)
            return result

        self.logger.info("Score cache miss", place_id=place_id)
        result = await self.single_flight.fetch_or_compute(key, _generate, fallback=None)
        if result is None:
            return ScoreOutcome(ScoreStatus.UNAVAILABLE, usage=usage, rate_limit=rate_result)

        # Every caller that missed the cache is charged, whether it led the
        # generation or joined one already in flight.
        new_count = await self.usage_tracker.increment(user_id)
        if new_count is not None:
            usage = replace(
                usage,
                count=new_count,
                remaining=None if usage.limit is None else max(0, usage.limit - new_count),
            )

        return ScoreOutcome(ScoreStatus.OK, score=result, cached=False, usage=usage, rate_limit=rate_result)
