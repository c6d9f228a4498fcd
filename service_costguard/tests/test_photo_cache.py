"""
Unit tests for the place photo cache.
"""

import asyncio
import hashlib
import pytest
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_costguard.app.adapters.blob_store import InMemoryBlobStore, LONG_LIVED_CACHE_CONTROL
from service_costguard.app.adapters.places_client import PhotoFetchError
from service_costguard.app.fetching.photo_cache import (
    PLACEHOLDERS,
    SYSTEM_ERROR_PLACEHOLDER,
    PhotoCache,
    photo_key,
)
from service_costguard.app.fetching.single_flight import SingleFlight


class SlowPlacesClient:
    """Places client double that counts downloads and yields before answering."""

    def __init__(self, data: bytes = b"\xff\xd8jpeg"):
        self.data = data
        self.downloads = 0

    async def fetch_photo(self, photo_reference: str, max_width: int = 800) -> bytes:
        self.downloads += 1
        await asyncio.sleep(0.01)
        return self.data


class TestPhotoCache:
    """Test cases for PhotoCache."""

    @pytest.fixture
    def blob_store(self):
        return InMemoryBlobStore("https://cdn.example.com/blobs")

    @pytest.fixture
    def places_client(self):
        return SlowPlacesClient()

    @pytest.fixture
    def photo_cache(self, blob_store, places_client):
        return PhotoCache(blob_store, places_client, SingleFlight("photo_fetch", timeout=1.0))

    def test_photo_key(self):
        ref = "places/ChIJ123/photos/abc"
        digest = hashlib.md5(ref.encode("utf-8")).hexdigest()
        assert photo_key("ChIJ123", ref) == f"places/ChIJ123/{digest}.jpg"

    @pytest.mark.asyncio
    async def test_simultaneous_requests_download_once(self, photo_cache, blob_store, places_client):
        urls = await asyncio.gather(
            photo_cache.get_cached_photo_url("X", "abc"),
            photo_cache.get_cached_photo_url("X", "abc"),
        )

        assert places_client.downloads == 1
        assert blob_store.put_count == 1
        assert urls[0] == urls[1] == blob_store.public_url(photo_key("X", "abc"))

    @pytest.mark.asyncio
    async def test_stored_blob_is_public_and_long_lived(self, photo_cache, blob_store):
        await photo_cache.get_cached_photo_url("X", "abc")
        blob = await blob_store.get(photo_key("X", "abc"))

        assert blob.data == b"\xff\xd8jpeg"
        assert blob.content_type == "image/jpeg"
        assert blob.public_read is True
        assert blob.cache_control == LONG_LIVED_CACHE_CONTROL
        assert blob.metadata["original_place_id"] == "X"
        assert blob.metadata["original_ref"] == "abc"
        assert "fetched_at" in blob.metadata

    @pytest.mark.asyncio
    async def test_existing_blob_skips_download(self, photo_cache, blob_store, places_client):
        await blob_store.put(photo_key("X", "abc"), b"cached", "image/jpeg", public_read=True)

        url = await photo_cache.get_cached_photo_url("X", "abc")

        assert places_client.downloads == 0
        assert url == blob_store.public_url(photo_key("X", "abc"))

    @pytest.mark.asyncio
    async def test_missing_arguments_return_empty(self, photo_cache, places_client):
        assert await photo_cache.get_cached_photo_url("", "abc") == ""
        assert await photo_cache.get_cached_photo_url("X", "") == ""
        assert places_client.downloads == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["metadata", "photo_uri", "download"])
    async def test_known_failures_map_to_stage_placeholder(self, blob_store, stage):
        places_client = AsyncMock()
        places_client.fetch_photo.side_effect = PhotoFetchError(stage, "failed")
        photo_cache = PhotoCache(blob_store, places_client)

        url = await photo_cache.get_cached_photo_url("X", "abc")

        assert url == PLACEHOLDERS[stage]
        assert blob_store.put_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_failure_maps_to_system_placeholder(self, blob_store):
        places_client = AsyncMock()
        places_client.fetch_photo.side_effect = RuntimeError("socket closed")
        photo_cache = PhotoCache(blob_store, places_client)

        assert await photo_cache.get_cached_photo_url("X", "abc") == SYSTEM_ERROR_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_placeholder_is_not_cached(self, blob_store):
        places_client = AsyncMock()
        places_client.fetch_photo.side_effect = [PhotoFetchError("download", "failed"), b"jpeg"]
        photo_cache = PhotoCache(blob_store, places_client)

        assert await photo_cache.get_cached_photo_url("X", "abc") == PLACEHOLDERS["download"]
        assert await photo_cache.get_cached_photo_url("X", "abc") == blob_store.public_url(photo_key("X", "abc"))

    @pytest.mark.asyncio
    async def test_timeout_maps_to_system_placeholder(self, blob_store):
        class HangingClient:
            async def fetch_photo(self, photo_reference, max_width=800):
                await asyncio.sleep(10)

        photo_cache = PhotoCache(blob_store, HangingClient(), SingleFlight("photo_fetch", timeout=0.05))

        assert await photo_cache.get_cached_photo_url("X", "abc") == SYSTEM_ERROR_PLACEHOLDER
