"""Immediate DID purchase settled from the customer's balance.

Sequence::

    re-read DID (must be available)
      -> price first period
      -> balance check         (InsufficientBalance, nothing written)
      -> debit                 (BalanceDeductionFailed, nothing written)
      -> ledger movement
      -> did_purchase invoice  (failure logged, debit kept)
      -> assign DID            (AssignmentAfterDebitFailed)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.billing.invoices import InvoiceWriter
from did_engine.clock import Clock, SystemClock
from did_engine.errors import (
    AssignmentAfterDebitFailed,
    BalanceDeductionFailed,
    ConflictError,
    CustomerNotFound,
    DidEngineError,
    DidNotAvailable,
    DidNotFound,
    DidTakenAfterDebit,
    InsufficientBalance,
)
from did_engine.inventory import InventoryStateMachine
from did_engine.ledger import BalanceLedgerClient, SqlBalanceLedger
from did_engine.proration import FirstPeriod, calculate_first_period, money
from did_engine.state.repository import CustomerRepository, DidRepository
from did_engine.state.tables import CustomerTable, DidStatus, DidTable, InvoiceTable, InvoiceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    did: DidTable
    invoice: InvoiceTable | None
    amount_charged: Decimal
    balance_after: Decimal
    first_period: FirstPeriod

    def to_dict(self) -> dict[str, Any]:
        return {
            "did_id": self.did.id,
            "e164": self.did.e164,
            "status": self.did.status,
            "invoice_id": self.invoice.id if self.invoice is not None else None,
            "invoice_number": self.invoice.invoice_number if self.invoice is not None else None,
            "amount_charged": str(self.amount_charged),
            "balance_after": str(self.balance_after),
            "next_renewal_date": self.first_period.next_renewal_date.isoformat(),
        }


class DidPurchaseService:
    """Buys an ``available`` DID for a customer, paying from balance.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    ledger:
        Balance client.  Defaults to :class:`SqlBalanceLedger` on the same
        session, which puts debit and assignment in one transaction.
    clock:
        Time source for proration and timestamps.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: BalanceLedgerClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._customers = CustomerRepository(session)
        self._dids = DidRepository(session)
        self._inventory = InventoryStateMachine(session, clock=self._clock)
        self._ledger = ledger or SqlBalanceLedger(session, clock=self._clock)
        self._invoices = InvoiceWriter(session, clock=self._clock)

    async def _customer(self, customer_id: int) -> CustomerTable:
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})
        return customer

    async def _available_did(self, did_id: int) -> DidTable:
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if did.status != DidStatus.AVAILABLE or did.owner_customer_id is not None:
            raise DidNotAvailable(
                f"DID {did.e164} is not available for purchase",
                details={"did_id": did_id, "status": did.status},
            )
        return did

    # -- Read-only --------------------------------------------------------

    async def preview(self, customer_id: int, did_id: int) -> dict[str, Any]:
        """Cost breakdown and affordability without touching anything."""
        customer = await self._customer(customer_id)
        did = await self._available_did(did_id)
        period = calculate_first_period(did.setup_price, did.monthly_price, self._clock.now())
        balance = await self._ledger.get_balance(customer.tenant_id, customer.id)
        return {
            "did_id": did.id,
            "e164": did.e164,
            **period.to_dict(),
            "current_balance": str(balance),
            "can_purchase": balance >= period.total_due_now,
            "balance_after_purchase": str(money(balance - period.total_due_now)),
        }

    async def can_afford(self, customer_id: int, did_id: int) -> bool:
        customer = await self._customer(customer_id)
        did = await self._dids.get(did_id)
        if did is None:
            return False
        period = calculate_first_period(did.setup_price, did.monthly_price, self._clock.now())
        balance = await self._ledger.get_balance(customer.tenant_id, customer.id)
        return balance >= period.total_due_now

    # -- Purchase ---------------------------------------------------------

    async def purchase(self, customer_id: int, did_id: int) -> PurchaseResult:
        """Charge the first period to balance and assign the DID.

        Raises
        ------
        DidNotAvailable
            The DID is no longer ``available``.
        InsufficientBalance
            The balance does not cover the first period.
        BalanceDeductionFailed
            The ledger refused the debit; nothing was written.
        AssignmentAfterDebitFailed
            The debit went through but the DID could not be assigned.
        DidTakenAfterDebit
            As above, because another buyer assigned the DID first.
        """
        customer = await self._customer(customer_id)
        did = await self._available_did(did_id)
        now = self._clock.now()
        period = calculate_first_period(did.setup_price, did.monthly_price, now)
        total = period.total_due_now

        balance = await self._ledger.get_balance(customer.tenant_id, customer.id)
        if balance < total:
            logger.info(
                "Purchase of %s by customer %s refused: balance %s < %s",
                did.e164,
                customer_id,
                balance,
                total,
            )
            raise InsufficientBalance(total, balance)

        debit = await self._ledger.decrement_balance(customer.id, total)
        if not debit.success:
            raise BalanceDeductionFailed(
                debit.error or "Balance deduction failed",
                details={"did_id": did.id, "amount": str(total)},
            )
        balance_after = debit.balance_after if debit.balance_after is not None else money(balance - total)

        await self._ledger.record_movement(customer.id, -total, balance_after, f"DID purchase: {did.e164}")

        invoice: InvoiceTable | None = None
        try:
            async with self._session.begin_nested():
                invoice = await self._invoices.paid_from_balance(
                    prefix="DID",
                    customer_id=customer.id,
                    invoice_type=InvoiceType.DID_PURCHASE,
                    amount=total,
                    description=f"DID purchase: {did.e164}",
                    period_start=period.period_start,
                    period_end=period.period_end,
                    did=did,
                )
        except Exception:
            logger.error(
                "Invoice creation failed after debiting %s from customer %s for %s; manual follow-up required",
                total,
                customer.id,
                did.e164,
                exc_info=True,
            )

        try:
            assigned = await self._inventory.assign(did.id, customer.id, period.next_renewal_date)
        except DidEngineError as exc:
            logger.error(
                "DID %s could not be assigned to customer %s after debiting %s: %s",
                did.e164,
                customer.id,
                total,
                exc,
            )
            failure = DidTakenAfterDebit if isinstance(exc, ConflictError) else AssignmentAfterDebitFailed
            raise failure(
                f"Balance was charged but DID {did.e164} could not be assigned",
                details={
                    "did_id": did.id,
                    "amount": str(total),
                    "invoice_id": invoice.id if invoice is not None else None,
                    "cause": exc.code,
                },
            ) from exc

        logger.info(
            "DID %s purchased by customer %s for %s (balance now %s)",
            assigned.e164,
            customer.id,
            total,
            balance_after,
        )
        return PurchaseResult(
            did=assigned,
            invoice=invoice,
            amount_charged=total,
            balance_after=balance_after,
            first_period=period,
        )
