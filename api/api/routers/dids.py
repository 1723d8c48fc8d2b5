"""Customer DID endpoints: purchase preview, purchase and release."""

from __future__ import annotations

import logging
from typing import Any

from did_engine.billing import DidPurchaseService, DidReleaseService
from fastapi import APIRouter

from api.dependencies import ClockDep, CustomerDep, SessionDep
from api.schemas import CanReleaseResponse, DidResponse, ReleaseResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dids", tags=["dids"])


@router.get("/{did_id}/purchase-preview")
async def purchase_preview(
    did_id: int,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> dict[str, Any]:
    """Prorated cost breakdown and whether the balance covers it."""
    return await DidPurchaseService(session, clock=clock).preview(customer_id, did_id)


@router.post("/{did_id}/purchase")
async def purchase(
    did_id: int,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> dict[str, Any]:
    """Pay the first period from balance and assign the DID."""
    result = await DidPurchaseService(session, clock=clock).purchase(customer_id, did_id)
    return result.to_dict()


@router.get("/{did_id}/can-release", response_model=CanReleaseResponse)
async def can_release(
    did_id: int,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> CanReleaseResponse:
    allowed = await DidReleaseService(session, clock=clock).can_release(customer_id, did_id)
    return CanReleaseResponse(did_id=did_id, can_release=allowed)


@router.post("/{did_id}/release", response_model=ReleaseResponse)
async def release(
    did_id: int,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> ReleaseResponse:
    """Return an owned, non-BYON DID to inventory."""
    did = await DidReleaseService(session, clock=clock).release(customer_id, did_id)
    return ReleaseResponse(released=True, did=DidResponse.model_validate(did))
