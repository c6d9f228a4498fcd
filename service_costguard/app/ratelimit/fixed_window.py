"""
Fixed-window rate limiter backed by document store transactions.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, TYPE_CHECKING

from fastapi import Request
from redis.exceptions import RedisError

from shared.errors import StoreError, TransactionConflictError
from shared.logging import get_logger
from ..adapters.document_store import DocumentStore, Transaction
from ..clock import Clock, now_ms

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


RATE_LIMIT_COLLECTION = "rate_limits"

# Store outages the limiter admits through
STORE_UNAVAILABLE_ERRORS = (StoreError, RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named request budget."""
    scope: str
    limit: int
    window_ms: int


@dataclass
class RateLimitResult:
    """Outcome of one admission check."""
    limit_reached: bool
    remaining: int
    reset_at: int
    limit: int
    degraded: bool = False

    def headers(self, now: Optional[int] = None) -> Dict[str, str]:
        """Standard rate limit response headers."""
        now = now_ms() if now is None else now
        reset_in = max(0, (self.reset_at - now + 999) // 1000)
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(reset_in),
        }
        if self.limit_reached:
            headers["Retry-After"] = str(reset_in)
        return headers


def make_identifier(scope: str, subject: str) -> str:
    """Counter id for ``subject`` under a named budget."""
    return f"{scope}:{subject}"


def client_identifier(request: Request) -> str:
    """Best-effort client address for per-IP budgets."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


class FixedWindowRateLimiter:
    """Counts requests per identifier in fixed windows.

    The read-decide-write sequence runs inside a single store transaction so
    that two concurrent requests can never both take the last slot. If the
    store is unavailable, the limiter fails open with ``degraded=True``. A
    transaction that keeps losing to concurrent writers is rejected.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Clock = now_ms,
        metrics: Optional["MetricsCollector"] = None,
        collection: str = RATE_LIMIT_COLLECTION,
    ):
        self.store = store
        self.clock = clock
        self.metrics = metrics
        self.collection = collection
        self.logger = get_logger("costguard.rate_limiter")

    async def check(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """Admit or reject one request for ``identifier``."""
        now = self.clock()

        async def _decide(tx: Transaction) -> RateLimitResult:
            counter = await tx.get(self.collection, identifier)

            if counter is None or now > int(counter.get("reset_at", 0)):
                reset_at = now + window_ms
                tx.set(self.collection, identifier, {"count": 1, "reset_at": reset_at})
                return RateLimitResult(False, limit - 1, reset_at, limit)

            count = int(counter.get("count", 0))
            reset_at = int(counter["reset_at"])
            if count >= limit:
                return RateLimitResult(True, 0, reset_at, limit)

            count += 1
            tx.set(self.collection, identifier, {"count": count, "reset_at": reset_at})
            return RateLimitResult(False, limit - count, reset_at, limit)

        try:
            result = await self.store.run_transaction(_decide)
        except TransactionConflictError as exc:
            self.logger.warning("Rate limit check contended, rejecting", identifier=identifier, error=str(exc))
            self._record("contended")
            return RateLimitResult(True, 0, now + window_ms, limit, degraded=True)
        except STORE_UNAVAILABLE_ERRORS as exc:
            self.logger.error("Rate limit check error, failing open", identifier=identifier, error=str(exc))
            self._record("degraded")
            return RateLimitResult(False, limit, now + window_ms, limit, degraded=True)

        if result.limit_reached:
            self.logger.warning("Rate limit exceeded", identifier=identifier, limit=limit)
        self._record("rejected" if result.limit_reached else "admitted")
        return result

    async def enforce(self, policy: RateLimitPolicy, subject: str) -> RateLimitResult:
        """Check ``subject`` against a named policy."""
        return await self.check(make_identifier(policy.scope, subject), policy.limit, policy.window_ms)

    def _record(self, decision: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", decision=decision)
