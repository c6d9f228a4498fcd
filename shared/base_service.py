"""
Base service class for Cost Guard services.

Provides the FastAPI app with request correlation, HTTP metrics, the
``/health`` and ``/metrics`` endpoints, the error-to-response mapping and a
shutdown hook. Subclasses add routes and override ``_check_dependencies``
and ``_on_shutdown``.
"""

import os
import time
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import AccessLayerException, ValidationError

SERVICE_VERSION = "1.0.0"


def route_template(request: Request) -> str:
    """Matched route path (``/api/v1/blobs/{path:path}``), else the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name)
        self._started = time.monotonic()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_error_handlers()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        local = self.config.env == "local"
        app = FastAPI(
            title=f"{self.service_name.title()} Service",
            version=SERVICE_VERSION,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
        )

        @app.on_event("shutdown")
        async def _shutdown():
            self.logger.info("Service shutting down")
            await self._on_shutdown()

        return app

    def _setup_middleware(self):
        """CORS plus request id, timing and metrics for every request."""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def correlate_and_measure(request: Request, call_next):
            started = time.perf_counter()
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.perf_counter() - started
            endpoint = route_template(request)
            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=duration,
            )
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                route=endpoint,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id,
            )
            response.headers["X-Request-ID"] = request_id
            return response

    def _setup_error_handlers(self):
        """Map exceptions to the standard error body."""

        @self.app.exception_handler(AccessLayerException)
        async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
            self.logger.warning("Request rejected", code=exc.code, message=exc.message, details=exc.details)
            self.metrics.record_error(exc.code)
            return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
            error = ValidationError("Missing or invalid parameters", {"fields": fields})
            self.metrics.record_error(error.code)
            return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            )

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Liveness plus dependency status; 503 when any dependency is down."""
            body = {
                "service": self.service_name,
                "uptime_seconds": round(time.monotonic() - self._started, 3),
                "version": SERVICE_VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(status_code=503, content={**body, "status": "error", "error": str(e)})

            healthy = all(state == "ok" for state in dependencies.values())
            status = "ok" if healthy else "degraded"
            self.metrics.record_health_check(status)
            return JSONResponse(
                status_code=200 if healthy else 503,
                content={**body, "status": status, "dependencies": dependencies},
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map of dependency name to ``"ok"`` or a failure reason. Override in subclasses."""
        return {}

    async def _on_shutdown(self) -> None:
        """Release resources. Override in subclasses."""
        return None

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
