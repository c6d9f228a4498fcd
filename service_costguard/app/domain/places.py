"""
Place details behind the cost-control layer.

Lookups are rate limited per client, served from the TTL cache when a live
entry exists, and otherwise fetched once per place however many requests
miss at the same time. Details are mapped to the app's place shape before
caching, so a hit needs no further work.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from shared.logging import get_logger
from ..adapters.places_client import PlacesClient
from ..caching.ttl_cache import TTLCache, CacheDurations, make_cache_key
from ..fetching.single_flight import SingleFlight
from ..ratelimit.fixed_window import FixedWindowRateLimiter, RateLimitPolicy, RateLimitResult


PLACE_DETAILS_NAMESPACE = "place_details"

# Bumped whenever the mapped shape changes
DETAILS_SCHEMA_VERSION = "v4"

PRICE_LEVELS = {
    "PRICE_LEVEL_FREE": 0,
    "PRICE_LEVEL_INEXPENSIVE": 1,
    "PRICE_LEVEL_MODERATE": 2,
    "PRICE_LEVEL_EXPENSIVE": 3,
    "PRICE_LEVEL_VERY_EXPENSIVE": 4,
}


class PlaceLookupStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"


@dataclass
class PlaceLookup:
    status: PlaceLookupStatus
    place: Optional[Dict[str, Any]] = None
    cached: bool = False
    rate_limit: Optional[RateLimitResult] = None


def place_details_key(place_id: str) -> str:
    return make_cache_key({"place_id": place_id, "schema": DETAILS_SCHEMA_VERSION})


def photo_proxy_url(place_id: str, photo_name: str, width: int = 800) -> str:
    return f"/api/v1/images/proxy?id={quote(place_id, safe='')}&ref={quote(photo_name, safe='')}&width={width}"


def _text(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        return value.get("text")
    return None


def map_place_details(place_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Map a Places v1 document to the place shape the app serves."""
    resolved_id = data.get("id") or place_id
    photos = [
        {
            "height": photo.get("heightPx"),
            "width": photo.get("widthPx"),
            "name": photo.get("name"),
            "proxy_photo_url": photo_proxy_url(resolved_id, photo["name"]),
        }
        for photo in data.get("photos") or []
        if photo.get("name")
    ]
    location = data.get("location") or {}
    hours = data.get("regularOpeningHours") or {}

    reviews: List[Dict[str, Any]] = []
    for review in data.get("reviews") or []:
        author = review.get("authorAttribution") or {}
        reviews.append({
            "author_name": author.get("displayName") or "Anonymous",
            "rating": review.get("rating"),
            "relative_time_description": review.get("relativePublishTimeDescription"),
            "text": _text(review.get("text")) or "",
        })

    return {
        "place_id": resolved_id,
        "name": _text(data.get("displayName")) or "Unknown Place",
        "formatted_address": data.get("formattedAddress"),
        "formatted_phone_number": data.get("internationalPhoneNumber"),
        "website": data.get("websiteUri"),
        "rating": data.get("rating"),
        "user_ratings_total": data.get("userRatingCount"),
        "price_level": PRICE_LEVELS.get(data.get("priceLevel")),
        "types": list(data.get("types") or []),
        "geometry": {"location": {"lat": location.get("latitude"), "lng": location.get("longitude")}},
        "opening_hours": {
            "open_now": bool(hours.get("openNow", False)),
            "weekday_text": list(hours.get("weekdayDescriptions") or []),
        },
        "reviews": reviews,
        "photos": photos,
        "proxy_photo_url": photos[0]["proxy_photo_url"] if photos else None,
        "description": _text(data.get("editorialSummary")),
    }


class PlaceDetailsService:
    """Rate-limited, cached, coalesced place details lookups."""

    def __init__(
        self,
        cache: TTLCache,
        rate_limiter: FixedWindowRateLimiter,
        places_client: PlacesClient,
        *,
        rate_policy: RateLimitPolicy,
        single_flight: Optional[SingleFlight] = None,
        ttl_ms: int = CacheDurations.PLACE_DETAILS,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.places_client = places_client
        self.rate_policy = rate_policy
        self.single_flight = single_flight or SingleFlight("place_fetch")
        self.ttl_ms = ttl_ms
        self.logger = get_logger("costguard.places")

    async def lookup(self, place_id: str, client_id: str) -> PlaceLookup:
        rate_result = await self.rate_limiter.enforce(self.rate_policy, client_id)
        if rate_result.limit_reached:
            return PlaceLookup(PlaceLookupStatus.RATE_LIMITED, rate_limit=rate_result)

        key = place_details_key(place_id)
        cached = await self.cache.get(PLACE_DETAILS_NAMESPACE, key)
        if cached is not None:
            return PlaceLookup(PlaceLookupStatus.OK, place=cached, cached=True, rate_limit=rate_result)

        async def _fetch() -> Dict[str, Any]:
            data = await self.places_client.fetch_place_details(place_id)
            place = map_place_details(place_id, data)
            await self.cache.set(PLACE_DETAILS_NAMESPACE, key, place, ttl_ms=self.ttl_ms)
            return place

        self.logger.info("Place details cache miss", place_id=place_id)
        place = await self.single_flight.fetch_or_compute(key, _fetch, fallback=None)
        if place is None:
            return PlaceLookup(PlaceLookupStatus.UNAVAILABLE, rate_limit=rate_result)
        return PlaceLookup(PlaceLookupStatus.OK, place=place, rate_limit=rate_result)

    async def invalidate(self, place_id: str) -> bool:
        """Drop cached details so the next lookup refetches them."""
        removed = await self.cache.invalidate(PLACE_DETAILS_NAMESPACE, place_details_key(place_id))
        self.logger.info("Place details invalidated", place_id=place_id, removed=removed)
        return removed
