"""
Shared utilities for the rate limiting gateway.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton
- test_helpers: Token factory and in-memory store doubles for tests

Do not import from service packages into shared/.
"""
