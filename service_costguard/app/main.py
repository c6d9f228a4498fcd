"""
Cost Guard service: caching, rate limiting and usage quotas in front of
paid upstream APIs (place details, place photos, AI match scoring).
"""

import json
from typing import Any, Dict, List, Optional

import pydantic
from fastapi import Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.background import BackgroundTaskRunner
from shared.circuit_breaker import CircuitBreakerManager
from shared.config import ServiceConfig
from shared.errors import (
    AuthenticationError,
    QuotaExceededError,
    RateLimitError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.logging import set_user_context

from .adapters.blob_store import BlobStore, InMemoryBlobStore, RedisBlobStore, LONG_LIVED_CACHE_CONTROL
from .adapters.document_store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from .adapters.places_client import PlacesClient
from .adapters.scoring_client import ScoringClient
from .caching.ttl_cache import DAY_MS, TTLCache
from .clock import Clock, now_ms
from .domain.places import PLACE_DETAILS_NAMESPACE, PlaceDetailsService, PlaceLookupStatus
from .domain.scoring import SCORES_NAMESPACE, ScoreService, ScoreStatus
from .fetching.photo_cache import PhotoCache
from .fetching.single_flight import SingleFlight
from .quota.usage_tracker import UsageQuotaTracker
from .ratelimit.fixed_window import (
    FixedWindowRateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    client_identifier,
)


CACHE_NAMESPACES = (SCORES_NAMESPACE, PLACE_DETAILS_NAMESPACE)


class ScoreRequest(BaseModel):
    """Body of ``POST /api/v1/scores``."""

    place_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    dietary: Dict[str, Any]
    reviews: List[str] = Field(default_factory=list)


class CostGuardService(BaseService):
    """Cost Guard service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        clock: Clock = now_ms,
        document_store: Optional[DocumentStore] = None,
        blob_store: Optional[BlobStore] = None,
        places_client: Optional[PlacesClient] = None,
        scoring_client: Optional[ScoringClient] = None,
    ):
        super().__init__("costguard", 8020, config)
        self.clock = clock
        self.document_store = document_store or self._create_document_store()
        self.blob_store = blob_store or self._create_blob_store()
        self.background = BackgroundTaskRunner("costguard.background")
        self.circuit_breakers = CircuitBreakerManager()

        self.places_client = places_client or PlacesClient(
            self.config.places_api_key,
            self.config.places_api_url,
            timeout=self.config.upstream_timeout_seconds,
            circuit_breaker=self.circuit_breakers.get_circuit_breaker("places", 5, 30.0),
        )
        self.scoring_client = scoring_client or ScoringClient(
            self.config.scoring_service_url,
            self.config.scoring_api_key,
            timeout=self.config.upstream_timeout_seconds,
            circuit_breaker=self.circuit_breakers.get_circuit_breaker("scoring", 3, 30.0),
        )

        self.cache = TTLCache(
            self.document_store,
            clock=clock,
            background=self.background,
            metrics=self.metrics,
        )
        self.rate_limiter = FixedWindowRateLimiter(self.document_store, clock=clock, metrics=self.metrics)
        self.usage_tracker = UsageQuotaTracker(
            self.document_store,
            free_allowance=self.config.free_monthly_allowance,
            reset_period_ms=self.config.usage_reset_days * DAY_MS,
            clock=clock,
            metrics=self.metrics,
        )

        self.photo_policy = RateLimitPolicy("photo", self.config.photo_rate_limit, self.config.photo_rate_window_ms)
        self.score_policy = RateLimitPolicy("score", self.config.score_rate_limit, self.config.score_rate_window_ms)
        self.place_policy = RateLimitPolicy("place", self.config.place_rate_limit, self.config.place_rate_window_ms)

        self.photo_flights = SingleFlight(
            "photo_fetch", timeout=self.config.fetch_timeout_seconds, metrics=self.metrics
        )
        self.score_flights = SingleFlight(
            "score_fetch", timeout=self.config.fetch_timeout_seconds, metrics=self.metrics
        )
        self.place_flights = SingleFlight(
            "place_fetch", timeout=self.config.fetch_timeout_seconds, metrics=self.metrics
        )
        self.photo_cache = PhotoCache(self.blob_store, self.places_client, self.photo_flights)
        self.score_service = ScoreService(
            self.cache,
            self.rate_limiter,
            self.usage_tracker,
            self.scoring_client,
            rate_policy=self.score_policy,
            single_flight=self.score_flights,
            background=self.background,
        )
        self.place_details = PlaceDetailsService(
            self.cache,
            self.rate_limiter,
            self.places_client,
            rate_policy=self.place_policy,
            single_flight=self.place_flights,
        )

        self._setup_costguard_routes()

        self.app.state.costguard_service = self

    def _create_document_store(self) -> DocumentStore:
        if self.config.store_backend == "memory":
            return InMemoryDocumentStore()
        return RedisDocumentStore(
            self.config.redis_url,
            prefix=self.config.store_prefix,
            max_attempts=self.config.store_transaction_attempts,
        )

    def _create_blob_store(self) -> BlobStore:
        if self.config.store_backend == "memory":
            return InMemoryBlobStore(self.config.public_blob_base_url)
        return RedisBlobStore(
            self.config.redis_url,
            self.config.public_blob_base_url,
            prefix=self.config.store_prefix,
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Ping the document store."""
        reachable = await self.document_store.ping()
        return {"document_store": "ok" if reachable else "unreachable"}

    async def _on_shutdown(self) -> None:
        await self.background.drain()
        await self.places_client.close()
        await self.scoring_client.close()
        await self.blob_store.close()
        await self.document_store.close()

    def _rate_limited_response(self, result: RateLimitResult) -> JSONResponse:
        error = RateLimitError(details={"limit": result.limit, "reset_at": result.reset_at})
        self.metrics.record_error(error.code)
        return JSONResponse(
            status_code=error.status_code,
            content=error.to_response().model_dump(),
            headers=result.headers(self.clock()),
        )

    def _setup_costguard_routes(self):
        """Set up cost guard routes."""

        @self.app.get("/")
        async def root():
            return {"service": "costguard", "message": "Cost Guard - upstream cost control"}

        @self.app.get("/api/v1/images/proxy")
        async def image_proxy(
            request: Request,
            id: Optional[str] = Query(None),
            ref: Optional[str] = Query(None),
            width: int = Query(800, ge=1, le=4800),
        ):
            """Redirect to a durable URL for a place photo."""
            if not id or not ref:
                raise ValidationError("Missing id or ref", {"required": ["id", "ref"]})

            result = await self.rate_limiter.enforce(self.photo_policy, client_identifier(request))
            if result.limit_reached:
                return self._rate_limited_response(result)

            url = await self.photo_cache.get_cached_photo_url(id, ref, width)
            return RedirectResponse(url, status_code=307, headers=result.headers(self.clock()))

        @self.app.get("/api/v1/blobs/{path:path}")
        async def get_blob(path: str):
            """Serve a publicly readable blob."""
            blob = await self.blob_store.get(path)
            if blob is None or not blob.public_read:
                return JSONResponse(status_code=404, content={
                    "code": "NOT_FOUND",
                    "message": "Blob not found",
                    "details": {"path": path},
                })
            return Response(
                content=blob.data,
                media_type=blob.content_type,
                headers={"Cache-Control": blob.cache_control or LONG_LIVED_CACHE_CONTROL},
            )

        @self.app.get("/api/v1/places/details")
        async def place_details(request: Request, place_id: Optional[str] = Query(None)):
            """Place details, cached per place."""
            if not place_id:
                raise ValidationError("Missing place_id", {"required": ["place_id"]})

            lookup = await self.place_details.lookup(place_id, client_identifier(request))
            if lookup.status == PlaceLookupStatus.RATE_LIMITED:
                return self._rate_limited_response(lookup.rate_limit)
            if lookup.status == PlaceLookupStatus.UNAVAILABLE:
                raise UpstreamUnavailableError("places", "Place details could not be fetched")

            return JSONResponse(
                content={"place": lookup.place, "cached": lookup.cached},
                headers=lookup.rate_limit.headers(self.clock()),
            )

        @self.app.delete("/api/v1/places/details")
        async def invalidate_place_details(place_id: Optional[str] = Query(None),
                                           x_user_id: Optional[str] = Header(None)):
            """Drop cached details, e.g. after an owner edits the listing."""
            if not x_user_id:
                raise AuthenticationError("Missing X-User-Id header")
            if not place_id:
                raise ValidationError("Missing place_id", {"required": ["place_id"]})
            set_user_context(x_user_id)
            return {"place_id": place_id, "invalidated": await self.place_details.invalidate(place_id)}

        @self.app.post("/api/v1/scores")
        async def create_score(request: Request, x_user_id: Optional[str] = Header(None)):
            """Score a place for the caller's dietary profile."""
            if not x_user_id:
                raise AuthenticationError("Missing X-User-Id header")
            set_user_context(x_user_id)

            try:
                payload = ScoreRequest.model_validate(await request.json())
            except json.JSONDecodeError:
                raise ValidationError("Request body must be JSON")
            except pydantic.ValidationError as exc:
                fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
                raise ValidationError("Missing or invalid fields", {"fields": fields})

            outcome = await self.score_service.score(
                x_user_id,
                payload.place_id,
                payload.name,
                payload.dietary,
                payload.reviews,
            )

            if outcome.status == ScoreStatus.RATE_LIMITED:
                return self._rate_limited_response(outcome.rate_limit)
            if outcome.status == ScoreStatus.LIMIT_REACHED:
                raise QuotaExceededError(
                    "Monthly AI check allowance used up",
                    {"usage": outcome.usage.to_dict()},
                )
            if outcome.status == ScoreStatus.UNAVAILABLE:
                raise UpstreamUnavailableError("scoring", "Score could not be generated")

            return JSONResponse(
                content={
                    "score": outcome.score,
                    "cached": outcome.cached,
                    "usage": outcome.usage.to_dict() if outcome.usage else None,
                },
                headers=outcome.rate_limit.headers(self.clock()) if outcome.rate_limit else None,
            )

        @self.app.get("/api/v1/usage")
        async def get_usage(x_user_id: Optional[str] = Header(None)):
            """Usage status for the caller."""
            if not x_user_id:
                raise AuthenticationError("Missing X-User-Id header")
            set_user_context(x_user_id)
            status = await self.usage_tracker.check_limit(x_user_id)
            return {"user_id": x_user_id, **status.to_dict()}

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats():
            """Cache, single-flight and circuit breaker state."""
            namespaces = {}
            for namespace in CACHE_NAMESPACES:
                namespaces[namespace] = await self.cache.collection_stats(namespace)
            return {
                "hit_metrics": self.cache.get_hit_metrics(),
                "namespaces": namespaces,
                "single_flight": {
                    "photo_fetch": self.photo_flights.stats(),
                    "score_fetch": self.score_flights.stats(),
                    "place_fetch": self.place_flights.stats(),
                },
                "circuit_breakers": self.circuit_breakers.get_all_states(),
                "background_tasks": self.background.pending,
            }


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = CostGuardService(config)
    return service.app


if __name__ == "__main__":
    service = CostGuardService()
    service.run()
