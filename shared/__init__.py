"""
Shared utilities for the Device Inventory backend.

This package holds the building blocks every service is assembled from:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton with health, metrics and error handlers

Do not import from service packages into shared/.
"""
