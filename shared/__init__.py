"""
Shared utilities for the wallet billing layer.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- observability: Logging, metrics and span events in one place
- errors: Canonical error types and responses
- retry: Retry decorator with backoff
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton (health, metrics, error handling)
- test_helpers: Test data factories

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
