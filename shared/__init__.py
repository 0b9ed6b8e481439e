"""
Shared utilities for the Task Manager state layer.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- observability: Structured state layer events
- errors: Canonical error types and responses
- retry: Retry profiles and the retry loop
- circuit_breaker: Per operation class call protection
- resilience: Retry + circuit breaker policy in one call

Do not import from service packages into shared/.
"""
