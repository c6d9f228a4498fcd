"""
Shared utilities for the Cost Guard service.

Common building blocks consumed by the service package:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators
- circuit_breaker: Resilient upstream call protection
- background: Tracked fire-and-forget tasks
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Do not import from service_* packages into shared/.
"""
