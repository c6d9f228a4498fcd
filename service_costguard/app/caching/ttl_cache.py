"""
Durable TTL cache over the document store.

Entries live in one collection per namespace and carry their own creation
time and TTL. Expiry is lazy: an expired document may still be stored but is
never returned. Caching is an optimisation, so store failures degrade to a
miss on read and to a logged no-op on write.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from shared.logging import get_logger
from ..adapters.document_store import DocumentStore
from ..clock import Clock, now_ms

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.background import BackgroundTaskRunner
    from shared.metrics import MetricsCollector


DAY_MS = 24 * 60 * 60 * 1000

BASE64_ENCODING = "base64"


class CacheDurations:
    """TTLs for cached upstream results."""
    GEMINI_SCORES = 30 * DAY_MS
    PLACE_DETAILS = 7 * DAY_MS
    DEFAULT = DAY_MS


@dataclass
class CacheEntry:
    """A cached value with its creation time and lifetime (both in ms)."""
    namespace: str
    key: str
    value: Any
    created_at: int
    ttl_ms: int

    def is_expired(self, now: int) -> bool:
        return (now - self.created_at) >= self.ttl_ms

    @classmethod
    def from_document(cls, namespace: str, key: str, doc: Mapping[str, Any]) -> "CacheEntry":
        value = doc.get("value")
        if doc.get("encoding") == BASE64_ENCODING:
            value = base64.b64decode(value)
        return cls(
            namespace=namespace,
            key=key,
            value=value,
            created_at=int(doc["created_at"]),
            ttl_ms=int(doc["ttl_ms"]),
        )


def make_cache_key(params: Mapping[str, Any]) -> str:
    """Deterministic key for a parameter mapping, independent of key order."""
    joined = "|".join(f"{name}:{_key_part(params[name])}" for name in sorted(params))
    return joined.encode("utf-8").hex()[:100]


def _key_part(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_document_value(value: Any) -> Any:
    """Bytes become base64 text; anything else is reduced to plain JSON."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return json.loads(json.dumps(value, default=str))


class TTLCache:
    """get/set of JSON or bytes values under ``(namespace, key)`` with per-entry TTL."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Clock = now_ms,
        background: Optional["BackgroundTaskRunner"] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.clock = clock
        self.background = background
        self.metrics = metrics
        self.logger = get_logger("costguard.cache")
        self._hit_metrics: Dict[str, Dict[str, int]] = {}

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        """Return the live value or ``None``."""
        try:
            doc = await self.store.get(namespace, key)
            if doc is None:
                self._record(namespace, hit=False)
                return None
            entry = CacheEntry.from_document(namespace, key, doc)
        except Exception as exc:
            self.logger.error("Cache get error (treated as miss)", namespace=namespace, key=key, error=str(exc))
            self._record(namespace, hit=False)
            return None

        now = self.clock()
        if entry.is_expired(now):
            self._record(namespace, hit=False)
            if self.background is not None:
                self.background.spawn(self._purge_if_expired(namespace, key), label="cache_purge")
            return None

        self._track_hit(namespace, key, now)
        self._record(namespace, hit=True)
        return entry.value

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl_ms: int = CacheDurations.DEFAULT,
        updated_by: Optional[str] = None,
    ) -> bool:
        """Upsert ``value``; returns ``False`` if the write failed."""
        try:
            doc = {
                "value": _to_document_value(value),
                "created_at": self.clock(),
                "ttl_ms": int(ttl_ms),
            }
            if isinstance(value, (bytes, bytearray)):
                doc["encoding"] = BASE64_ENCODING
            if updated_by:
                doc["updated_by"] = updated_by
            await self.store.set(namespace, key, doc)
            self.logger.debug("Cached value", namespace=namespace, key=key, ttl_ms=ttl_ms)
            return True
        except Exception as exc:
            self.logger.error("Cache set error (non-fatal)", namespace=namespace, key=key, error=str(exc))
            return False

    async def invalidate(self, namespace: str, key: str) -> bool:
        try:
            await self.store.delete(namespace, key)
            return True
        except Exception as exc:
            self.logger.error("Cache invalidate error", namespace=namespace, key=key, error=str(exc))
            return False

    async def _purge_if_expired(self, namespace: str, key: str) -> None:
        # Re-check so a concurrent refresh is not deleted
        doc = await self.store.get(namespace, key)
        if doc is not None and CacheEntry.from_document(namespace, key, doc).is_expired(self.clock()):
            await self.store.delete(namespace, key)

    def _track_hit(self, namespace: str, key: str, now: int) -> None:
        metric = self._hit_metrics.setdefault(f"{namespace}:{key}", {"hits": 0, "last_accessed": now})
        metric["hits"] += 1
        metric["last_accessed"] = now

    def _record(self, namespace: str, hit: bool) -> None:
        if self.metrics:
            name = "cache_hits_total" if hit else "cache_misses_total"
            self.metrics.increment_counter(name, cache_type=namespace)

    def get_hit_metrics(self) -> Dict[str, Dict[str, int]]:
        """Per-key hit counts since process start."""
        return {key: dict(value) for key, value in self._hit_metrics.items()}

    async def collection_stats(self, namespace: str) -> Dict[str, Any]:
        """Count active and expired entries stored in a namespace."""
        try:
            documents = await self.store.list_documents(namespace)
        except Exception as exc:
            self.logger.error("Cache stats error", namespace=namespace, error=str(exc))
            return {"error": str(exc)}

        now = self.clock()
        active = expired = 0
        for key, doc in documents:
            try:
                entry = CacheEntry.from_document(namespace, key, doc)
            except (KeyError, TypeError, ValueError):
                expired += 1
                continue
            if entry.is_expired(now):
                expired += 1
            else:
                active += 1
        return {"total": len(documents), "active": active, "expired": expired}
