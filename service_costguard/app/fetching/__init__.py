"""
Coalesced fetching of expensive upstream resources.

- single_flight: per-process dedup of concurrent identical fetches
- photo_cache: place photos persisted to the blob store behind single-flight
"""

from .single_flight import SingleFlight
from .photo_cache import PhotoCache, photo_key, PLACEHOLDERS, SYSTEM_ERROR_PLACEHOLDER

__all__ = [
    "SingleFlight",
    "PhotoCache",
    "photo_key",
    "PLACEHOLDERS",
    "SYSTEM_ERROR_PLACEHOLDER",
]
