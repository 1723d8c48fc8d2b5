"""Per-invoice-type side effects for gateway payment and overdue events.

Handlers are looked up in a dict keyed by ``invoice_type``; each type has
at most one paid handler and at most one overdue handler.  A handler
returns a JSON-serialisable dict that is merged into the webhook response.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock, first_of_next_month
from did_engine.errors import DidEngineError, HandlerError, StateConflict
from did_engine.inventory import InventoryStateMachine
from did_engine.ledger import BalanceLedgerClient, SqlBalanceLedger
from did_engine.proration import money
from did_engine.state.repository import DidRepository
from did_engine.state.tables import DidStatus, DidTable, InvoiceTable, InvoiceType

logger = logging.getLogger(__name__)


class InvoiceHandler(Protocol):
    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]: ...


def renewed_past(did: DidTable, invoice: InvoiceTable) -> bool:
    """Whether *did* is already paid beyond the period *invoice* was raised for."""
    if invoice.period_start is None or did.next_renewal_at is None:
        return False
    return did.next_renewal_at > invoice.period_start.date()


# ---------------------------------------------------------------------------
# Paid handlers
# ---------------------------------------------------------------------------


class BalanceTopupPaidHandler:
    """Credit the customer's balance with the invoice total."""

    def __init__(self, ledger: BalanceLedgerClient) -> None:
        self._ledger = ledger

    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]:
        amount = money(invoice.total_amount)
        if amount <= 0:
            logger.warning("Top-up invoice %s has non-positive total %s; skipping", invoice.id, amount)
            return {
                "action": "balance_topup_skipped",
                "message": "Invoice amount is zero or negative",
            }

        result = await self._ledger.increment_balance(invoice.customer_id, amount)
        if not result.success or result.balance_after is None:
            raise HandlerError(
                f"Failed to increment balance: {result.error}",
                details={"invoice_id": invoice.id},
            )
        await self._ledger.record_movement(
            invoice.customer_id,
            amount,
            result.balance_after,
            f"Balance top-up: invoice {invoice.invoice_number}",
        )
        logger.info("Balance top-up %s credited to customer %s", amount, invoice.customer_id)
        return {
            "action": "balance_topup_completed",
            "customer_id": invoice.customer_id,
            "amount": str(amount),
            "previous_balance": str(money(result.balance_after - amount)),
            "new_balance": str(result.balance_after),
        }


class DidPurchasePaidHandler:
    """Make sure the purchased DID is assigned to the paying customer."""

    def __init__(self, session: AsyncSession, *, clock: Clock) -> None:
        self._inventory = InventoryStateMachine(session, clock=clock)
        self._clock = clock

    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]:
        if invoice.did_id is None:
            raise HandlerError(
                "DID purchase invoice has no DID linked",
                details={"invoice_id": invoice.id, "ddi_e164": invoice.ddi_e164},
            )
        try:
            did, changed = await self._inventory.ensure_assigned_to(
                invoice.did_id,
                invoice.customer_id,
                first_of_next_month(self._clock.now().date()),
            )
        except DidEngineError as exc:
            raise HandlerError(
                f"DID {invoice.ddi_e164} cannot be provisioned to customer {invoice.customer_id}: {exc.message}",
                details={"invoice_id": invoice.id, "did_id": invoice.did_id},
            ) from exc

        logger.info(
            "DID purchase invoice %s paid: %s %s",
            invoice.id,
            did.e164,
            "assigned" if changed else "already assigned",
        )
        return {
            "action": "did_purchase_completed",
            "did_id": did.id,
            "ddi_number": did.e164,
            "customer_id": invoice.customer_id,
        }


class DidRenewalPaidHandler:
    """Advance the renewal cursor of the DIDs the invoice paid for.

    A single-DID invoice names its DID.  A consolidated invoice does not,
    so the customer's DIDs that were due when it was issued are advanced.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock) -> None:
        self._dids = DidRepository(session)
        self._inventory = InventoryStateMachine(session, clock=clock)

    async def _covered(self, invoice: InvoiceTable) -> list[DidTable]:
        if invoice.did_id is not None:
            did = await self._dids.get(invoice.did_id)
            if did is None:
                raise HandlerError("Renewed DID no longer exists", details={"invoice_id": invoice.id})
            if did.owner_customer_id != invoice.customer_id or did.status != DidStatus.ASSIGNED:
                raise HandlerError(
                    f"DID {did.e164} does not belong to customer {invoice.customer_id}",
                    details={"invoice_id": invoice.id, "did_id": did.id},
                )
            return [did]

        if invoice.period_start is None:
            raise HandlerError("Renewal invoice has no DID and no period", details={"invoice_id": invoice.id})
        due_on: date = invoice.period_start.date()
        return await self._dids.list_owned_due(invoice.customer_id, due_on)

    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]:
        dids = await self._covered(invoice)
        renewed: list[dict[str, Any]] = []
        for did in dids:
            if renewed_past(did, invoice):
                logger.info("Renewal invoice %s: DID %s already renewed, skipping", invoice.id, did.e164)
                continue
            advanced = await self._inventory.advance_renewal(did.id)
            renewed.append(
                {
                    "did_id": advanced.id,
                    "ddi_number": advanced.e164,
                    "next_renewal_at": advanced.next_renewal_at.isoformat() if advanced.next_renewal_at else None,
                }
            )
        logger.info("Renewal invoice %s paid: %d DID(s) advanced", invoice.id, len(renewed))
        return {
            "action": "did_renewal_completed",
            "customer_id": invoice.customer_id,
            "renewed_ddis": renewed,
            "count": len(renewed),
        }


class StandardPaidHandler:
    """Nothing to provision; the payment is recorded by the gateway itself."""

    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]:
        logger.info("Standard invoice %s paid (customer %s)", invoice.id, invoice.customer_id)
        return {
            "action": "standard_invoice_paid",
            "message": "Standard invoice payment recorded",
        }


# ---------------------------------------------------------------------------
# Overdue handlers
# ---------------------------------------------------------------------------


class DidRenewalOverdueHandler:
    """Release the DIDs of a renewal invoice that was never paid.

    Only DIDs still due at the start of the invoice period are released.
    DIDs already back in inventory or renewed since are skipped, so
    repeated deliveries are harmless.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock) -> None:
        self._dids = DidRepository(session)
        self._inventory = InventoryStateMachine(session, clock=clock)

    async def _targets(self, invoice: InvoiceTable) -> list[DidTable]:
        if invoice.did_id is not None:
            did = await self._dids.get(invoice.did_id)
            return [did] if did is not None else []
        if invoice.period_start is None:
            return []
        return await self._dids.list_owned_due(invoice.customer_id, invoice.period_start.date())

    async def handle(self, invoice: InvoiceTable) -> dict[str, Any]:
        released: list[str] = []
        for did in await self._targets(invoice):
            if did.status != DidStatus.ASSIGNED or did.owner_customer_id != invoice.customer_id:
                logger.info("Overdue invoice %s: DID %s already released, skipping", invoice.id, did.e164)
                continue
            if renewed_past(did, invoice):
                logger.info("Overdue invoice %s: DID %s renewed since, skipping", invoice.id, did.e164)
                continue
            try:
                await self._inventory.release(did.id, owner_customer_id=invoice.customer_id)
            except StateConflict:
                logger.info("Overdue invoice %s: DID %s released concurrently, skipping", invoice.id, did.e164)
                continue
            released.append(did.e164)
            logger.warning(
                "Overdue invoice %s: DID %s released from customer %s",
                invoice.id,
                did.e164,
                invoice.customer_id,
            )
        return {
            "action": "ddi_released",
            "released_ddis": released,
            "count": len(released),
        }


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------


def paid_handlers(
    session: AsyncSession,
    *,
    ledger: BalanceLedgerClient | None = None,
    clock: Clock | None = None,
) -> dict[str, InvoiceHandler]:
    clock = clock or SystemClock()
    ledger = ledger or SqlBalanceLedger(session, clock=clock)
    return {
        InvoiceType.BALANCE_TOPUP: BalanceTopupPaidHandler(ledger),
        InvoiceType.DID_PURCHASE: DidPurchasePaidHandler(session, clock=clock),
        InvoiceType.DID_RENEWAL: DidRenewalPaidHandler(session, clock=clock),
        InvoiceType.STANDARD: StandardPaidHandler(),
    }


def overdue_handlers(session: AsyncSession, *, clock: Clock | None = None) -> dict[str, InvoiceHandler]:
    clock = clock or SystemClock()
    return {
        InvoiceType.DID_RENEWAL: DidRenewalOverdueHandler(session, clock=clock),
    }
