"""API router modules for the DID control plane."""

from __future__ import annotations

from api.routers import balance, byon, dids, health, orders, webhooks

__all__ = [
    "balance",
    "byon",
    "dids",
    "health",
    "orders",
    "webhooks",
]
