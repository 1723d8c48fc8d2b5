"""Middleware components for the DID API."""

from __future__ import annotations

from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
