"""
Shared utilities for the Learnpath Access Layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for transient transport failures
- base_service: FastAPI service scaffolding (health, metrics, error handlers)

Any cross-service logic should live here to avoid import cycles across
service packages. Apart from test_helpers, shared/ never imports from service_*
packages.
"""
