"""
Shared metrics configuration for the IoT Data Marketplace gateway.

Each collector owns its own ``CollectorRegistry`` so that several service
instances (one per test, for example) never clash on metric names.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type"],
            registry=self.registry
        )

        self._setup_marketplace_metrics()

    def _setup_marketplace_metrics(self):
        """Set up access, cache, live update and usage metrics."""
        self._metrics["access_decisions_total"] = Counter(
            "access_decisions_total",
            "Access decisions by outcome and path",
            ["decision", "path"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total blob cache hits",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total blob cache misses",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["active_connections"] = Gauge(
            "active_connections",
            "Number of live update connections",
            registry=self.registry
        )

        self._metrics["messages_sent_total"] = Counter(
            "messages_sent_total",
            "Live update messages sent",
            ["type"],
            registry=self.registry
        )

        self._metrics["usage_records_total"] = Counter(
            "usage_records_total",
            "Usage records written",
            ["status"],
            registry=self.registry
        )

        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Upstream call duration in seconds",
            ["upstream", "operation"],
            registry=self.registry
        )

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_error(self, error_type: str):
        """Record error metrics."""
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    def record_access_decision(self, granted: bool, path: str):
        decision = "granted" if granted else "denied"
        self._metrics["access_decisions_total"].labels(decision=decision, path=path).inc()

    def record_cache_lookup(self, namespace: str, hit: bool):
        name = "cache_hits_total" if hit else "cache_misses_total"
        self._metrics[name].labels(namespace=namespace).inc()

    @contextmanager
    def time_upstream(self, upstream: str, operation: str):
        """Context manager to time an upstream call."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self._metrics["upstream_request_duration_seconds"].labels(
                upstream=upstream, operation=operation
            ).observe(time.perf_counter() - start_time)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
