"""Billing-gateway webhook authentication and dispatch."""

from did_engine.webhooks.gateway import PROVIDER_REF, WebhookGateway
from did_engine.webhooks.handlers import overdue_handlers, paid_handlers
from did_engine.webhooks.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    compute_signature,
    verify_webhook,
)

__all__ = [
    "PROVIDER_REF",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "WebhookGateway",
    "compute_signature",
    "overdue_handlers",
    "paid_handlers",
    "verify_webhook",
]
