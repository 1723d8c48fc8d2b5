"""Balance endpoints: top-up invoices and the renewal sweep."""

from __future__ import annotations

import logging
from typing import Any

from did_engine.billing import BalanceTopupService, DidRenewalService
from fastapi import APIRouter

from api.dependencies import AdminDep, ClockDep, CustomerDep, SessionDep
from api.schemas import InvoiceResponse, RenewalRunRequest, TopupRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["balance"])


@router.post("/balance/topups", response_model=InvoiceResponse, status_code=201)
async def create_topup(
    body: TopupRequest,
    customer_id: CustomerDep,
    session: SessionDep,
    clock: ClockDep,
) -> InvoiceResponse:
    """Issue a top-up invoice; the balance is credited when it is paid."""
    invoice = await BalanceTopupService(session, clock=clock).create_topup_invoice(customer_id, body.amount)
    return InvoiceResponse.model_validate(invoice)


@router.post("/admin/dids/renewals")
async def run_renewals(
    body: RenewalRunRequest,
    admin: AdminDep,
    session: SessionDep,
    clock: ClockDep,
) -> dict[str, Any]:
    """Run the renewal sweep for one day (optionally one customer)."""
    logger.info("Renewal sweep requested by %s (as_of=%s, dry_run=%s)", admin, body.as_of, body.dry_run)
    stats = await DidRenewalService(session, clock=clock).run(
        body.as_of,
        customer_id=body.customer_id,
        dry_run=body.dry_run,
    )
    return stats.to_dict()
