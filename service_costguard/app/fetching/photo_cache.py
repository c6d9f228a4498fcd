"""
Place photo cache: upstream photo downloads persisted to the blob store.
"""

import hashlib
from datetime import datetime, timezone
from typing import Dict, Optional

from shared.logging import get_logger
from ..adapters.blob_store import BlobStore, LONG_LIVED_CACHE_CONTROL
from ..adapters.places_client import PlacesClient, PhotoFetchError
from .single_flight import SingleFlight


PLACEHOLDER_BASE = "https://placehold.co/600x400/grey/white?text="

PLACEHOLDERS: Dict[str, str] = {
    "metadata": PLACEHOLDER_BASE + "No+Image+Meta",
    "photo_uri": PLACEHOLDER_BASE + "No+Photo+URI",
    "download": PLACEHOLDER_BASE + "Download+Error",
}
SYSTEM_ERROR_PLACEHOLDER = PLACEHOLDER_BASE + "System+Error"


def photo_key(place_id: str, photo_reference: str) -> str:
    """Blob path for a photo; the reference is hashed to keep paths short."""
    digest = hashlib.md5(photo_reference.encode("utf-8")).hexdigest()
    return f"places/{place_id}/{digest}.jpg"


class PhotoCache:
    """Resolves a place photo to a durable public URL."""

    def __init__(
        self,
        blob_store: BlobStore,
        places_client: PlacesClient,
        single_flight: Optional[SingleFlight] = None,
    ):
        self.blob_store = blob_store
        self.places_client = places_client
        self.single_flight = single_flight or SingleFlight("photo_fetch")
        self.logger = get_logger("costguard.photo_cache")

    async def get_cached_photo_url(self, place_id: str, photo_reference: str, max_width: int = 800) -> str:
        """Public URL of the cached photo, or a placeholder when it cannot be had."""
        if not place_id or not photo_reference:
            return ""

        key = photo_key(place_id, photo_reference)
        return await self.single_flight.fetch_or_compute(
            key,
            lambda: self._populate(key, place_id, photo_reference, max_width),
            fallback=SYSTEM_ERROR_PLACEHOLDER,
        )

    async def _populate(self, key: str, place_id: str, photo_reference: str, max_width: int) -> str:
        if await self.blob_store.exists(key):
            self.logger.debug("Photo cache hit", key=key)
            return self.blob_store.public_url(key)

        self.logger.info("Photo cache miss, downloading", key=key)
        try:
            data = await self.places_client.fetch_photo(photo_reference, max_width)
        except PhotoFetchError as exc:
            # Placeholders are not persisted, so the next request retries
            return PLACEHOLDERS.get(exc.stage, SYSTEM_ERROR_PLACEHOLDER)

        await self.blob_store.put(
            key,
            data,
            content_type="image/jpeg",
            public_read=True,
            cache_control=LONG_LIVED_CACHE_CONTROL,
            metadata={
                "original_place_id": place_id,
                "original_ref": photo_reference,
                "fetched_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        self.logger.info("Photo cached", key=key, size=len(data))
        return self.blob_store.public_url(key)
