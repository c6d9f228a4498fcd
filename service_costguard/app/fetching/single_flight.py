"""
Per-process request coalescing.

Concurrent callers asking for the same key share one in-flight task. The
task is registered before anyone awaits it and removed by a done-callback
when it settles, so a key can never stay stuck as "in flight". Errors and
timeouts resolve to the caller-supplied fallback for every waiter.

Only work inside one process is deduplicated; separate instances may still
fetch the same key concurrently and converge once one write lands.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class SingleFlight:
    """Map of key -> pending task with insert-before-await, delete-on-settle."""

    def __init__(
        self,
        name: str = "single_flight",
        *,
        timeout: Optional[float] = 15.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.name = name
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger(f"costguard.{name}")
        self._pending: Dict[str, asyncio.Task] = {}
        self._stats = {"leaders": 0, "coalesced": 0, "fallbacks": 0, "timeouts": 0}

    async def fetch_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[Any]],
        fallback: Any = None,
    ) -> Any:
        """Return ``compute_fn()``'s result, running it at most once per key at a time."""
        task = self._pending.get(key)
        if task is not None:
            self._stats["coalesced"] += 1
            self._record_role("follower")
            # Shield so one waiter's cancellation leaves the shared task running
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._run(key, compute_fn, fallback))
        self._pending[key] = task
        task.add_done_callback(lambda done: self._release(key, done))
        self._stats["leaders"] += 1
        self._record_role("leader")
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _run(self, key: str, compute_fn: Callable[[], Awaitable[Any]], fallback: Any) -> Any:
        start = time.perf_counter()
        try:
            if self.timeout is None:
                result = await compute_fn()
            else:
                result = await asyncio.wait_for(compute_fn(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            self.logger.error("Coalesced fetch timed out", key=key, timeout=self.timeout)
            return self._fallback(fallback, "timeout", start)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error("Coalesced fetch failed", key=key, error=str(exc), error_type=type(exc).__name__)
            return self._fallback(fallback, "error", start)

        self._observe("success", start)
        return result

    def _fallback(self, fallback: Any, reason: str, start: float) -> Any:
        self._stats["fallbacks"] += 1
        self._observe(reason, start)
        if self.metrics:
            self.metrics.increment_counter("fetch_fallbacks_total", reason=reason)
        return fallback

    def _record_role(self, role: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("single_flight_total", role=role)

    def _observe(self, outcome: str, start: float) -> None:
        if self.metrics:
            self.metrics.observe_histogram(
                "upstream_fetch_duration_seconds", time.perf_counter() - start, outcome=outcome
            )

    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def stats(self) -> Dict[str, Any]:
        return {**self._stats, "in_flight": len(self._pending)}
