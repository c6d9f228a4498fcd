"""
Monthly usage quota per user.

User documents have accumulated several shapes over time (``tier`` vs
``subscriptionTier`` vs ``plan``, ``usage`` vs ``credits``). They are folded
into one ``UsageRecord`` by ``normalize_usage_record`` at the data access
boundary; nothing past that point looks at legacy fields.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from shared.logging import get_logger
from ..adapters.document_store import DocumentStore, Transaction
from ..clock import Clock, now_ms, ms_to_datetime, datetime_to_ms
from .plans import Tier, get_plan_limits, remaining_checks, can_use_ai_check

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


USERS_COLLECTION = "users"
DEFAULT_RESET_PERIOD_MS = 30 * 24 * 60 * 60 * 1000


@dataclass
class UsageRecord:
    """Canonical view of a user's usage document."""
    user_id: str
    count: int
    last_reset_date: datetime
    tier: Tier


@dataclass
class UsageStatus:
    """Result of a quota check. ``remaining``/``limit`` are ``None`` when unbounded."""
    count: int
    remaining: Optional[int]
    limit: Optional[int]
    tier: Tier
    limit_reached: bool
    last_reset_date: datetime
    persisted: bool = True
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "remaining": self.remaining,
            "limit": self.limit,
            "tier": self.tier.value,
            "limit_reached": self.limit_reached,
            "last_reset_date": format_timestamp(self.last_reset_date),
        }


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings or epoch numbers (seconds or milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Stripe-style epoch seconds vs JS-style epoch milliseconds
        return ms_to_datetime(int(value * 1000) if value < 1e12 else int(value))
    if isinstance(value, str):
        try:
            text = value[:-1] + "+00:00" if value.endswith("Z") else value
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _resolve_tier(doc: Mapping[str, Any], now: datetime) -> Tier:
    raw = doc.get("tier") or doc.get("subscriptionTier")
    if not raw:
        raw = Tier.PREMIUM.value if doc.get("plan") == Tier.PREMIUM.value else Tier.FREE.value
    tier = Tier.PREMIUM if raw == Tier.PREMIUM.value else Tier.FREE

    if tier == Tier.PREMIUM:
        subscription = doc.get("subscription") or {}
        period_end = parse_timestamp(subscription.get("current_period_end") or doc.get("currentPeriodEnd"))
        if period_end is not None and now > period_end:
            return Tier.FREE
    return tier


def normalize_usage_record(user_id: str, doc: Mapping[str, Any], now: datetime) -> UsageRecord:
    """Fold any known user document shape into a ``UsageRecord``."""
    usage = doc.get("usage") or {}
    credits = doc.get("credits") or {}

    count = usage.get("count")
    if count is None:
        count = credits.get("used", 0)
    try:
        count = max(0, int(count))
    except (TypeError, ValueError):
        count = 0

    last_reset = parse_timestamp(usage.get("lastResetDate")) or parse_timestamp(credits.get("resetDate")) or now

    return UsageRecord(
        user_id=user_id,
        count=count,
        last_reset_date=last_reset,
        tier=_resolve_tier(doc, now),
    )


class UsageQuotaTracker:
    """Monthly allowance per user, tier aware, with rolling reset."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        free_allowance: int = 5,
        reset_period_ms: int = DEFAULT_RESET_PERIOD_MS,
        clock: Clock = now_ms,
        metrics: Optional["MetricsCollector"] = None,
        collection: str = USERS_COLLECTION,
    ):
        self.store = store
        self.free_allowance = free_allowance
        self.reset_period_ms = reset_period_ms
        self.clock = clock
        self.metrics = metrics
        self.collection = collection
        self.logger = get_logger("costguard.usage")

    def _reset_due(self, record: UsageRecord, now: int) -> bool:
        return now - datetime_to_ms(record.last_reset_date) >= self.reset_period_ms

    def _usage_fields(self, count: int, last_reset: datetime) -> Dict[str, Any]:
        return {"usage": {"count": count, "lastResetDate": format_timestamp(last_reset)}}

    def _status(self, record: UsageRecord, persisted: bool = True, degraded: bool = False) -> UsageStatus:
        limits = get_plan_limits(record.tier, self.free_allowance)
        return UsageStatus(
            count=record.count,
            remaining=remaining_checks(limits, record.count),
            limit=limits.ai_checks_per_month,
            tier=record.tier,
            limit_reached=not can_use_ai_check(limits, record.count),
            last_reset_date=record.last_reset_date,
            persisted=persisted,
            degraded=degraded,
        )

    async def check_limit(self, user_id: str) -> UsageStatus:
        """Current status; applies a due reset before evaluating the limit."""
        now = self.clock()
        now_dt = ms_to_datetime(now)

        async def _check(tx: Transaction) -> Optional[UsageRecord]:
            doc = await tx.get(self.collection, user_id)
            if doc is None:
                return None
            record = normalize_usage_record(user_id, doc, now_dt)
            if self._reset_due(record, now):
                record = replace(record, count=0, last_reset_date=now_dt)
                tx.set(self.collection, user_id, self._usage_fields(0, now_dt), merge=True)
                self.logger.info("Usage period reset", user_id=user_id)
            return record

        try:
            record = await self.store.run_transaction(_check)
        except Exception as exc:
            self.logger.error("Usage check error, failing open", user_id=user_id, error=str(exc))
            status = self._status(UsageRecord(user_id, 0, now_dt, Tier.FREE), persisted=False, degraded=True)
            self._record(status, "degraded")
            return status

        if record is None:
            # New user; initialisation is left to ensure_record
            status = self._status(UsageRecord(user_id, 0, now_dt, Tier.FREE), persisted=False)
        else:
            status = self._status(record)

        self._record(status, "rejected" if status.limit_reached else "allowed")
        return status

    async def ensure_record(self, user_id: str) -> bool:
        """Create the user's usage fields if missing; returns whether it wrote.

        Safe to race: each caller runs in its own transaction, only fills
        missing fields, and merges rather than replaces.
        """
        now = self.clock()
        now_dt = ms_to_datetime(now)

        async def _ensure(tx: Transaction) -> bool:
            doc = await tx.get(self.collection, user_id)
            existing = doc or {}
            record = normalize_usage_record(user_id, existing, now_dt)
            fields: Dict[str, Any] = {}
            if not existing.get("tier"):
                fields["tier"] = record.tier.value
            if not existing.get("usage"):
                fields.update(self._usage_fields(record.count, record.last_reset_date))
            if not fields:
                return False
            tx.set(self.collection, user_id, fields, merge=True)
            return True

        try:
            created = await self.store.run_transaction(_ensure)
        except Exception as exc:
            self.logger.error("Usage record initialisation failed", user_id=user_id, error=str(exc))
            return False
        if created:
            self.logger.info("Initialised usage record", user_id=user_id)
        return created

    async def increment(self, user_id: str) -> Optional[int]:
        """Count one successful gated operation; returns the new count.

        Only call after the operation succeeded. Premium users are counted
        too, for analytics.
        """
        now = self.clock()
        now_dt = ms_to_datetime(now)

        async def _increment(tx: Transaction) -> int:
            doc = await tx.get(self.collection, user_id)
            if doc is None:
                tx.set(self.collection, user_id, {
                    "tier": Tier.FREE.value,
                    **self._usage_fields(1, now_dt),
                }, merge=True)
                return 1

            record = normalize_usage_record(user_id, doc, now_dt)
            if self._reset_due(record, now):
                count, last_reset = 1, now_dt
            else:
                count, last_reset = record.count + 1, record.last_reset_date
            tx.set(self.collection, user_id, self._usage_fields(count, last_reset), merge=True)
            return count

        try:
            return await self.store.run_transaction(_increment)
        except Exception as exc:
            self.logger.error("Usage increment failed", user_id=user_id, error=str(exc))
            return None

    def _record(self, status: UsageStatus, decision: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("usage_checks_total", tier=status.tier.value, decision=decision)
