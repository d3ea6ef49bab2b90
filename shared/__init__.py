"""
Shared utilities for the IoT Data Marketplace gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for upstream reads
- circuit_breaker: Resilient external call protection
- background: Tracked fire-and-forget tasks

Any cross-cutting logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
