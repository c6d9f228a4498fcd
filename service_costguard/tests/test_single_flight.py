"""
Unit tests for single-flight request coalescing.
"""

import asyncio
import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_costguard.app.fetching.single_flight import SingleFlight


class TestSingleFlight:
    """Test cases for SingleFlight."""

    @pytest.fixture
    def flights(self):
        return SingleFlight("test", timeout=1.0)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, flights):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        waiters = [asyncio.ensure_future(flights.fetch_or_compute("k", compute)) for _ in range(10)]
        await asyncio.sleep(0)
        assert flights.pending_keys() == ["k"]

        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert results == ["value"] * 10
        assert flights.stats()["leaders"] == 1
        assert flights.stats()["coalesced"] == 9

    @pytest.mark.asyncio
    async def test_key_released_after_success(self, flights):
        async def compute():
            return 1

        assert await flights.fetch_or_compute("k", compute) == 1
        assert flights.pending_keys() == []
        assert flights.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_sequential_calls_recompute(self, flights):
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            return calls

        assert await flights.fetch_or_compute("k", compute) == 1
        assert await flights.fetch_or_compute("k", compute) == 2

    @pytest.mark.asyncio
    async def test_different_keys_do_not_coalesce(self, flights):
        calls = []

        async def compute_for(key):
            calls.append(key)
            await asyncio.sleep(0)
            return key

        results = await asyncio.gather(
            flights.fetch_or_compute("a", lambda: compute_for("a")),
            flights.fetch_or_compute("b", lambda: compute_for("b")),
        )

        assert results == ["a", "b"]
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_error_resolves_to_fallback_for_all_waiters(self, flights):
        async def compute():
            await asyncio.sleep(0)
            raise RuntimeError("upstream exploded")

        results = await asyncio.gather(*(
            flights.fetch_or_compute("k", compute, fallback="placeholder") for _ in range(3)
        ))

        assert results == ["placeholder"] * 3
        assert flights.pending_keys() == []
        assert flights.stats()["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_synchronous_raise_resolves_to_fallback(self, flights):
        def compute():
            raise ValueError("raised before any await")

        assert await flights.fetch_or_compute("k", compute, fallback=None) is None
        assert flights.pending_keys() == []

    @pytest.mark.asyncio
    async def test_timeout_resolves_to_fallback_and_releases_key(self):
        flights = SingleFlight("slow", timeout=0.05)

        async def compute():
            await asyncio.sleep(10)

        result = await flights.fetch_or_compute("k", compute, fallback="timed-out")

        assert result == "timed-out"
        assert flights.pending_keys() == []
        assert flights.stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_task(self, flights):
        release = asyncio.Event()

        async def compute():
            await release.wait()
            return "value"

        first = asyncio.ensure_future(flights.fetch_or_compute("k", compute))
        second = asyncio.ensure_future(flights.fetch_or_compute("k", compute))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == "value"
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = MagicMock()
        flights = SingleFlight("metered", timeout=1.0, metrics=metrics)

        async def compute():
            raise RuntimeError("nope")

        await flights.fetch_or_compute("k", compute, fallback=None)

        metrics.increment_counter.assert_any_call("single_flight_total", role="leader")
        metrics.increment_counter.assert_any_call("fetch_fallbacks_total", reason="error")
