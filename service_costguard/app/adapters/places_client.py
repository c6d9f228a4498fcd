"""
Places API client: place details and place photos.

Downloading a place photo takes two upstream calls: the media endpoint,
asked not to redirect, returns a short-lived ``photoUri``; the binary is then
fetched from that URI.
"""

from typing import Any, Dict, Optional

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.circuit_breaker import CircuitBreaker


DETAILS_FIELD_MASK = ",".join((
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "photos",
    "rating",
    "userRatingCount",
    "regularOpeningHours",
    "reviews",
    "editorialSummary",
    "priceLevel",
    "websiteUri",
    "internationalPhoneNumber",
    "types",
))


class PhotoFetchError(ExternalServiceError):
    """Photo download failed at a known stage (metadata, photo_uri, download)."""

    def __init__(self, stage: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.stage = stage
        super().__init__("places", message, {"stage": stage, **(details or {})})


class PlacesClient:
    """Place details and raw photo bytes from the Places v1 API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://places.googleapis.com/v1",
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("costguard.places_client")
        self._client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="places",
        )

    async def fetch_photo(self, photo_reference: str, max_width: int = 800) -> bytes:
        """Return the JPEG bytes for ``photo_reference``."""
        return await self.circuit_breaker.call(self._fetch_photo, photo_reference, max_width)

    async def _fetch_photo(self, photo_reference: str, max_width: int) -> bytes:
        if not photo_reference.startswith("places/"):
            self.logger.warning("Legacy photo reference, expected a places/ resource name",
                                photo_reference=photo_reference)

        meta_url = f"{self.base_url}/{photo_reference}/media"
        params = {"maxWidthPx": max_width, "skipHttpRedirect": "true"}
        if self.api_key:
            params["key"] = self.api_key

        meta_response = await self._client.get(meta_url, params=params)
        if meta_response.status_code != 200:
            self.logger.error(
                "Photo metadata request failed",
                status_code=meta_response.status_code,
                response=meta_response.text[:500],
            )
            raise PhotoFetchError(
                "metadata",
                f"Unexpected status {meta_response.status_code}",
                {"status_code": meta_response.status_code},
            )

        try:
            photo_uri = meta_response.json().get("photoUri")
        except (ValueError, AttributeError):
            photo_uri = None
        if not photo_uri:
            self.logger.error("No photoUri in metadata response", photo_reference=photo_reference)
            raise PhotoFetchError("photo_uri", "Metadata response has no photoUri")

        image_response = await self._client.get(photo_uri)
        if image_response.status_code != 200:
            self.logger.error("Photo download failed", status_code=image_response.status_code)
            raise PhotoFetchError(
                "download",
                f"Unexpected status {image_response.status_code}",
                {"status_code": image_response.status_code},
            )

        return image_response.content

    async def fetch_place_details(self, place_id: str) -> Dict[str, Any]:
        """Return the raw Places v1 document for ``place_id``."""
        return await self.circuit_breaker.call(self._fetch_place_details, place_id)

    async def _fetch_place_details(self, place_id: str) -> Dict[str, Any]:
        headers = {"X-Goog-FieldMask": DETAILS_FIELD_MASK, "Accept-Language": "en"}
        if self.api_key:
            headers["X-Goog-Api-Key"] = self.api_key

        response = await self._client.get(f"{self.base_url}/places/{place_id}", headers=headers)
        if response.status_code != 200:
            self.logger.error(
                "Place details request failed",
                place_id=place_id,
                status_code=response.status_code,
                response=response.text[:500],
            )
            raise ExternalServiceError(
                service="places",
                message=f"Unexpected status {response.status_code}",
                details={"status_code": response.status_code, "place_id": place_id},
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise ExternalServiceError(service="places", message="Malformed place details body")
        return body

    async def close(self) -> None:
        await self._client.aclose()
