"""
Client for the generative match-scoring endpoint.
"""

from typing import Any, Dict, List, Optional

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.circuit_breaker import CircuitBreaker
from shared.retry import retry_on_exception, RetryConfig


def clamp_match_score(value: Any) -> int:
    """Round a provider score into the 0..100 integer range."""
    return max(0, min(100, int(round(float(value)))))


class ScoringClient:
    """Posts a place and a dietary profile, returns the structured score."""

    def __init__(
        self,
        endpoint_url: str,
        api_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.logger = get_logger("costguard.scoring_client")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="scoring",
        )

    async def score_place(
        self,
        place_id: str,
        name: str,
        dietary: Dict[str, Any],
        reviews: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Return ``{"matchScore": int, ...}`` for the place."""
        payload = {
            "place_id": place_id,
            "name": name,
            "dietary": dietary,
            "reviews": reviews or [],
        }
        return await self.circuit_breaker.call(self._post_score, payload)

    @retry_on_exception((httpx.TransportError,), config=RetryConfig(max_attempts=2, base_delay=0.25))
    async def _post_score(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = await self._client.post(self.endpoint_url, json=payload, headers=headers)

        if response.status_code != 200:
            self.logger.error(
                "Scoring request failed",
                status_code=response.status_code,
                place_id=payload["place_id"],
            )
            raise ExternalServiceError(
                service="scoring",
                message=f"Unexpected status {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or "matchScore" not in body:
            self.logger.error("Malformed scoring response", place_id=payload["place_id"])
            raise ExternalServiceError(service="scoring", message="Malformed response body")

        try:
            body["matchScore"] = clamp_match_score(body["matchScore"])
        except (TypeError, ValueError, OverflowError):
            raise ExternalServiceError(service="scoring", message="matchScore is not a finite number")

        return body

    async def close(self) -> None:
        await self._client.aclose()
