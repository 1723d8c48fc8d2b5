"""Billing-gateway webhook receivers: invoice paid and invoice overdue.

These endpoints carry no caller identity; every delivery is
authenticated by its HMAC signature instead.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from did_engine.webhooks import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookGateway
from fastapi import APIRouter, Depends, Request

from api.dependencies import ClockDep, SessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/billing", tags=["webhooks"])


def get_gateway(session: SessionDep, settings: SettingsDep, clock: ClockDep) -> WebhookGateway:
    return WebhookGateway(
        session,
        secret=settings.webhook_secret.get_secret_value(),
        clock=clock,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )


GatewayDep = Annotated[WebhookGateway, Depends(get_gateway)]


@router.post("/paid")
async def invoice_paid(request: Request, gateway: GatewayDep) -> dict[str, Any]:
    """Record a gateway payment and apply the invoice's side effect once."""
    return await gateway.process_paid(
        await request.body(),
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    )


@router.post("/overdue")
async def invoice_overdue(request: Request, gateway: GatewayDep) -> dict[str, Any]:
    """Apply the overdue policy (release renewal DIDs) for an unpaid invoice."""
    return await gateway.process_overdue(
        await request.body(),
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    )
