"""
Unit tests for the place details flow.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_costguard.app.adapters.document_store import InMemoryDocumentStore
from service_costguard.app.caching.ttl_cache import CacheDurations, TTLCache
from service_costguard.app.domain.places import (
    PLACE_DETAILS_NAMESPACE,
    PlaceDetailsService,
    PlaceLookupStatus,
    map_place_details,
    place_details_key,
)
from service_costguard.app.fetching.single_flight import SingleFlight
from service_costguard.app.ratelimit.fixed_window import FixedWindowRateLimiter, RateLimitPolicy
from shared.errors import ExternalServiceError


PLACES_DOCUMENT = {
    "id": "ChIJ123",
    "displayName": {"text": "Green Bowl"},
    "formattedAddress": "1 Main St",
    "location": {"latitude": 52.5, "longitude": 13.4},
    "rating": 4.6,
    "userRatingCount": 210,
    "priceLevel": "PRICE_LEVEL_MODERATE",
    "types": ["restaurant", "vegan_restaurant"],
    "regularOpeningHours": {"openNow": True, "weekdayDescriptions": ["Monday: 9-5"]},
    "reviews": [{"authorAttribution": {"displayName": "Ana"}, "rating": 5, "text": {"text": "Great"}}],
    "photos": [{"name": "places/ChIJ123/photos/p1", "heightPx": 600, "widthPx": 800}],
    "editorialSummary": {"text": "Plant-based bowls"},
}


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakePlaces:
    """Places client double that yields once before answering."""

    def __init__(self):
        self.calls = 0

    async def fetch_place_details(self, place_id):
        self.calls += 1
        await asyncio.sleep(0.01)
        return dict(PLACES_DOCUMENT, id=place_id)


class TestMapPlaceDetails:
    """Test cases for map_place_details."""

    def test_maps_core_fields(self):
        place = map_place_details("ChIJ123", PLACES_DOCUMENT)

        assert place["place_id"] == "ChIJ123"
        assert place["name"] == "Green Bowl"
        assert place["price_level"] == 2
        assert place["geometry"] == {"location": {"lat": 52.5, "lng": 13.4}}
        assert place["opening_hours"]["open_now"] is True
        assert place["reviews"][0]["author_name"] == "Ana"
        assert place["reviews"][0]["text"] == "Great"
        assert place["description"] == "Plant-based bowls"

    def test_photos_point_at_image_proxy(self):
        place = map_place_details("ChIJ123", PLACES_DOCUMENT)

        url = place["photos"][0]["proxy_photo_url"]
        assert url.startswith("/api/v1/images/proxy?id=ChIJ123&ref=places%2FChIJ123%2Fphotos%2Fp1")
        assert place["proxy_photo_url"] == url

    def test_sparse_document(self):
        place = map_place_details("abc", {})

        assert place["place_id"] == "abc"
        assert place["name"] == "Unknown Place"
        assert place["price_level"] is None
        assert place["photos"] == []
        assert place["proxy_photo_url"] is None


class TestPlaceDetailsService:
    """Test cases for PlaceDetailsService."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def places(self):
        return FakePlaces()

    def build(self, store, clock, places, rate_limit=20):
        return PlaceDetailsService(
            TTLCache(store, clock=clock),
            FixedWindowRateLimiter(store, clock=clock),
            places,
            rate_policy=RateLimitPolicy("place", rate_limit, 60_000),
            single_flight=SingleFlight("place_fetch", timeout=1.0),
        )

    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, store, clock, places):
        service = self.build(store, clock, places)

        lookup = await service.lookup("ChIJ123", "1.2.3.4")

        assert lookup.status == PlaceLookupStatus.OK
        assert lookup.cached is False
        assert lookup.place["name"] == "Green Bowl"
        doc = await store.get(PLACE_DETAILS_NAMESPACE, place_details_key("ChIJ123"))
        assert doc["value"]["name"] == "Green Bowl"
        assert doc["ttl_ms"] == CacheDurations.PLACE_DETAILS

    @pytest.mark.asyncio
    async def test_hit_skips_upstream(self, store, clock, places):
        service = self.build(store, clock, places)
        await service.lookup("ChIJ123", "1.2.3.4")

        lookup = await service.lookup("ChIJ123", "5.6.7.8")

        assert lookup.cached is True
        assert places.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self, store, clock, places):
        service = self.build(store, clock, places)

        lookups = await asyncio.gather(*(service.lookup("ChIJ123", f"10.0.0.{i}") for i in range(5)))

        assert places.calls == 1
        assert all(lookup.status == PlaceLookupStatus.OK for lookup in lookups)

    @pytest.mark.asyncio
    async def test_rate_limited_before_cache(self, store, clock, places):
        service = self.build(store, clock, places, rate_limit=1)
        await service.lookup("ChIJ123", "1.2.3.4")

        lookup = await service.lookup("ChIJ123", "1.2.3.4")

        assert lookup.status == PlaceLookupStatus.RATE_LIMITED
        assert lookup.rate_limit.limit_reached is True
        assert lookup.place is None

    @pytest.mark.asyncio
    async def test_upstream_failure_is_unavailable_and_not_cached(self, store, clock):
        places = AsyncMock()
        places.fetch_place_details.side_effect = ExternalServiceError("places", "down")
        service = self.build(store, clock, places)

        lookup = await service.lookup("ChIJ123", "1.2.3.4")

        assert lookup.status == PlaceLookupStatus.UNAVAILABLE
        assert await store.get(PLACE_DETAILS_NAMESPACE, place_details_key("ChIJ123")) is None

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, store, clock, places):
        service = self.build(store, clock, places)
        await service.lookup("ChIJ123", "1.2.3.4")

        assert await service.invalidate("ChIJ123") is True
        lookup = await service.lookup("ChIJ123", "1.2.3.4")

        assert lookup.cached is False
        assert places.calls == 2


class TestPlaceDetailsKey:
    """Test cases for place_details_key."""

    def test_key_is_per_place(self):
        assert place_details_key("a") != place_details_key("b")
        assert place_details_key("a") == place_details_key("a")
