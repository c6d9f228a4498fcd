"""
Prometheus metrics for the Cost Guard service.

Every collector owns its registry, so building several apps in one process
(tests, workers) never trips duplicate-timeseries errors.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional

# name -> (type, help, labels)
METRIC_DEFINITIONS = {
    "http_requests_total": (Counter, "Total HTTP requests", ("method", "endpoint", "status_code")),
    "http_request_duration_seconds": (Histogram, "HTTP request duration in seconds", ("method", "endpoint")),
    "health_check_total": (Counter, "Total health check requests", ("status",)),
    "errors_total": (Counter, "Total errors", ("error_type", "service")),
    "cache_hits_total": (Counter, "Cache reads that returned a live entry", ("cache_type",)),
    "cache_misses_total": (Counter, "Cache reads that found nothing or an expired entry", ("cache_type",)),
    "rate_limit_decisions_total": (Counter, "Rate limiter decisions", ("decision",)),
    "usage_checks_total": (Counter, "Usage quota checks", ("tier", "decision")),
    "single_flight_total": (Counter, "Single-flight requests by role", ("role",)),
    "fetch_fallbacks_total": (Counter, "Fetches that resolved to a fallback value", ("reason",)),
    "upstream_fetch_duration_seconds": (Histogram, "Duration of coalesced upstream fetches", ("outcome",)),
}


class MetricsCollector:
    """Named metrics bound to one registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {
            name: kind(name, description, list(labels), registry=self.registry)
            for name, (kind, description, labels) in METRIC_DEFINITIONS.items()
        }

        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})
        self._metrics["service_info"] = info

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self.increment_counter("http_requests_total", method=method, endpoint=endpoint, status_code=str(status_code))
        self.observe_histogram("http_request_duration_seconds", duration, method=method, endpoint=endpoint)

    def record_health_check(self, status: str):
        self.increment_counter("health_check_total", status=status)

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.increment_counter("errors_total", error_type=error_type, service=service or self.service_name)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
