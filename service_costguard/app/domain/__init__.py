"""Request flows composed from the cost-guard components."""

from .places import (
    PLACE_DETAILS_NAMESPACE,
    PlaceDetailsService,
    PlaceLookup,
    PlaceLookupStatus,
    map_place_details,
    place_details_key,
)
from .scoring import ScoreService, ScoreOutcome, ScoreStatus, dietary_hash, score_cache_key

__all__ = [
    "PLACE_DETAILS_NAMESPACE",
    "PlaceDetailsService",
    "PlaceLookup",
    "PlaceLookupStatus",
    "map_place_details",
    "place_details_key",
    "ScoreService",
    "ScoreOutcome",
    "ScoreStatus",
    "dietary_hash",
    "score_cache_key",
]
