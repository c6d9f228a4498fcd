"""
In-process integration tests: HTTP routes through the real upstream clients.

Upstream providers are replaced by httpx mock transports; everything else
(stores, cache, limiter, quota, single-flight) is the real implementation
on the in-memory backend.
"""

import asyncio
import pytest
from contextlib import asynccontextmanager
import httpx

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_costguard.app.main import CostGuardService
from service_costguard.app.adapters.places_client import PlacesClient
from service_costguard.app.adapters.scoring_client import ScoringClient
from service_costguard.app.fetching.photo_cache import photo_key
from shared.config import get_config


class UpstreamRecorder:
    """Mock upstream provider that counts calls per route."""

    def __init__(self):
        self.media_calls = 0
        self.download_calls = 0
        self.score_calls = 0

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "places.test":
            self.media_calls += 1
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"photoUri": "https://images.test/p.jpg"})
        if request.url.host == "images.test":
            self.download_calls += 1
            return httpx.Response(200, content=b"\xff\xd8photo")
        if request.url.host == "scoring.test":
            self.score_calls += 1
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"matchScore": 77, "reason": "Good options"})
        return httpx.Response(404)


class TestCostGuardFlow:
    """Integration tests for the cost guard request flows."""

    @pytest.fixture
    def upstream(self):
        return UpstreamRecorder()

    @pytest.fixture
    def service(self, upstream):
        config = get_config(
            "costguard",
            8020,
            store_backend="memory",
            public_blob_base_url="http://costguard.test/api/v1/blobs",
            free_monthly_allowance=3,
        )
        transport = httpx.MockTransport(upstream.handle)
        places = PlacesClient(
            "key",
            "https://places.test/v1",
            http_client=httpx.AsyncClient(transport=transport),
        )
        scoring = ScoringClient(
            "https://scoring.test/score",
            http_client=httpx.AsyncClient(transport=transport),
        )
        return CostGuardService(config, places_client=places, scoring_client=scoring)

    @asynccontextmanager
    async def open_client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://costguard.test") as client:
            yield client
        await service.background.drain()

    @pytest.mark.asyncio
    async def test_simultaneous_photo_requests_fetch_once(self, service, upstream):
        params = {"id": "X", "ref": "places/X/photos/abc"}

        async with self.open_client(service) as client:
            responses = await asyncio.gather(
                client.get("/api/v1/images/proxy", params=params),
                client.get("/api/v1/images/proxy", params=params),
            )

        locations = {r.headers["location"] for r in responses}
        assert all(r.status_code == 307 for r in responses)
        assert locations == {service.blob_store.public_url(photo_key("X", "places/X/photos/abc"))}
        assert upstream.media_calls == 1
        assert upstream.download_calls == 1
        assert service.blob_store.put_count == 1

    @pytest.mark.asyncio
    async def test_cached_photo_served_without_upstream(self, service, upstream):
        params = {"id": "X", "ref": "places/X/photos/abc"}

        async with self.open_client(service) as client:
            first = await client.get("/api/v1/images/proxy", params=params)
            await client.get("/api/v1/images/proxy", params=params)
            blob = await client.get(first.headers["location"])

        assert blob.status_code == 200
        assert blob.content == b"\xff\xd8photo"
        assert upstream.download_calls == 1

    @pytest.mark.asyncio
    async def test_scoring_allowance_lifecycle(self, service, upstream):
        headers = {"X-User-Id": "diner-1"}
        statuses = []

        async with self.open_client(service) as client:
            for place_id in ("a", "b", "c", "d"):
                response = await client.post("/api/v1/scores", headers=headers, json={
                    "place_id": place_id,
                    "name": f"Place {place_id}",
                    "dietary": {"gluten_free": True},
                })
                statuses.append(response.status_code)

            # Quota is checked before the cache, so cached places are gated too
            cached = await client.post("/api/v1/scores", headers=headers, json={
                "place_id": "a",
                "name": "Place a",
                "dietary": {"gluten_free": True},
            })
            usage = (await client.get("/api/v1/usage", headers=headers)).json()

        assert statuses == [200, 200, 200, 402]
        assert upstream.score_calls == 3
        assert cached.status_code == 402
        assert usage["count"] == 3
        assert usage["remaining"] == 0
        assert usage["limit_reached"] is True

    @pytest.mark.asyncio
    async def test_concurrent_scores_coalesce(self, service, upstream):
        body = {"place_id": "a", "name": "Place a", "dietary": {"vegan": True}}

        async with self.open_client(service) as client:
            responses = await asyncio.gather(*(
                client.post("/api/v1/scores", headers={"X-User-Id": f"diner-{i}"}, json=body)
                for i in range(4)
            ))
            counts = [
                (await client.get("/api/v1/usage", headers={"X-User-Id": f"diner-{i}"})).json()["count"]
                for i in range(4)
            ]

        assert all(r.status_code == 200 for r in responses)
        assert upstream.score_calls == 1
        assert {r.json()["score"]["matchScore"] for r in responses} == {77}
        assert counts == [1, 1, 1, 1]
