"""DID order endpoints for postpaid customers and their administrators."""

from __future__ import annotations

import logging
from typing import Any

from did_engine.orders import DidOrderService
from fastapi import APIRouter

from api.dependencies import AdminDep, ClockDep, CustomerDep, SessionDep
from api.schemas import (
    ApprovalResponse,
    DidResponse,
    InvoiceResponse,
    OrderCreateRequest,
    OrderExpireRequest,
    OrderRejectRequest,
    OrderResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------


@router.get("/orders/preview/{did_id}")
async def preview_order(
    did_id: int,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> dict[str, Any]:
    return await DidOrderService(session, clock=clock).preview(customer_id, did_id)


@router.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(
    body: OrderCreateRequest,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> OrderResponse:
    """Reserve the DID and queue the order for approval."""
    order = await DidOrderService(session, clock=clock).create_order(customer_id, body.did_id)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Administrator
# ---------------------------------------------------------------------------


@router.post("/admin/orders/{order_id}/approve", response_model=ApprovalResponse)
async def approve_order(
    order_id: int,
    admin: AdminDep,
    session: SessionDep,
    clock: ClockDep,
) -> ApprovalResponse:
    result = await DidOrderService(session, clock=clock).approve(order_id, admin)
    return ApprovalResponse(
        order=OrderResponse.model_validate(result.order),
        did=DidResponse.model_validate(result.did),
        invoice=InvoiceResponse.model_validate(result.invoice) if result.invoice is not None else None,
    )


@router.post("/admin/orders/{order_id}/reject", response_model=OrderResponse)
async def reject_order(
    order_id: int,
    body: OrderRejectRequest,
    admin: AdminDep,
    session: SessionDep,
    clock: ClockDep,
) -> OrderResponse:
    logger.info("Order %s rejected by %s", order_id, admin)
    order = await DidOrderService(session, clock=clock).reject(order_id, body.reason)
    return OrderResponse.model_validate(order)


@router.post("/admin/orders/expire")
async def expire_orders(
    body: OrderExpireRequest,
    admin: AdminDep,
    session: SessionDep,
    clock: ClockDep,
) -> dict[str, Any]:
    """Expire pending orders whose reservation lapsed."""
    stats = await DidOrderService(session, clock=clock).expire_orders(dry_run=body.dry_run)
    return stats.to_dict()
