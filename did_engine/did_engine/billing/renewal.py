"""Monthly DID renewal sweep.

DIDs whose renewal cursor has come due are grouped per customer.  Each
group is settled as a unit:

* balance covers the group: one debit, one paid ``did_renewal`` invoice,
  every cursor advanced by a month;
* otherwise: one ``did_renewal`` invoice left ``pending`` for the billing
  gateway, cursors untouched.  The paid webhook advances them later; the
  overdue webhook releases them.

A customer with an open renewal invoice is left to the gateway, even once
the balance could cover the group.

A group runs inside a SAVEPOINT so a failure part-way leaves neither a
debit without advanced cursors nor half the cursors advanced.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.billing.invoices import InvoiceWriter, did_list_summary
from did_engine.clock import Clock, SystemClock, add_months
from did_engine.errors import CustomerNotFound
from did_engine.inventory import InventoryStateMachine
from did_engine.ledger import BalanceLedgerClient, SqlBalanceLedger
from did_engine.proration import money
from did_engine.state.repository import CustomerRepository, DidRepository, InvoiceRepository
from did_engine.state.tables import DidTable, InvoiceType

logger = logging.getLogger(__name__)


class RenewalOutcome:
    BALANCE = "renewed_balance"
    GATEWAY = "sent_gateway"
    ALREADY_INVOICED = "already_invoiced"
    FREE = "renewed_free"


@dataclass(frozen=True)
class CustomerRenewal:
    customer_id: int
    did_ids: list[int]
    amount: Decimal
    outcome: str
    invoice_id: int | None = None


@dataclass
class RenewalStats:
    """Counters for one sweep."""

    as_of: date
    dry_run: bool = False
    customers_processed: int = 0
    renewed_balance: int = 0
    sent_gateway: int = 0
    already_invoiced: int = 0
    dids_renewed: int = 0
    total_amount: Decimal = Decimal("0.00")
    errors: int = 0
    results: list[CustomerRenewal] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "dry_run": self.dry_run,
            "customers_processed": self.customers_processed,
            "renewed_balance": self.renewed_balance,
            "sent_gateway": self.sent_gateway,
            "already_invoiced": self.already_invoiced,
            "dids_renewed": self.dids_renewed,
            "total_amount": str(self.total_amount),
            "errors": self.errors,
        }


def renewal_cost(dids: list[DidTable]) -> Decimal:
    return money(sum((Decimal(d.monthly_price) for d in dids), Decimal("0")))


class DidRenewalService:
    """Balance-first renewal of due DIDs.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    ledger:
        Balance client, defaults to :class:`SqlBalanceLedger`.
    clock:
        Time source; "today" is ``clock.now().date()``.
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
        self._invoice_repo = InvoiceRepository(session)
        self._inventory = InventoryStateMachine(session, clock=self._clock)
        self._ledger = ledger or SqlBalanceLedger(session, clock=self._clock)
        self._invoices = InvoiceWriter(session, clock=self._clock)

    async def due_by_customer(self, as_of: date, *, customer_id: int | None = None) -> dict[int, list[DidTable]]:
        """Due DIDs grouped by owning customer."""
        grouped: dict[int, list[DidTable]] = defaultdict(list)
        for did in await self._dids.list_due_for_renewal(as_of, customer_id=customer_id):
            if did.owner_customer_id is not None:
                grouped[did.owner_customer_id].append(did)
        return dict(grouped)

    async def renew_customer(self, customer_id: int, dids: list[DidTable]) -> CustomerRenewal:
        """Settle one customer's due DIDs from balance or via the gateway."""
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})

        now = self._clock.now()
        cost = renewal_cost(dids)
        did_ids = [d.id for d in dids]
        linked = dids[0] if len(dids) == 1 else None
        description = did_list_summary("DID renewal", dids)

        if cost <= 0:
            for did in dids:
                await self._inventory.advance_renewal(did.id)
            return CustomerRenewal(customer_id, did_ids, cost, RenewalOutcome.FREE)

        # An unpaid gateway invoice already covers this period.
        open_invoice = await self._invoice_repo.find_open_renewal(customer.id, now)
        if open_invoice is not None:
            logger.info(
                "Customer %s already has open renewal invoice %s; not renewing again",
                customer.id,
                open_invoice.invoice_number,
            )
            return CustomerRenewal(customer_id, did_ids, cost, RenewalOutcome.ALREADY_INVOICED, open_invoice.id)

        balance = await self._ledger.get_balance(customer.tenant_id, customer.id)
        if balance >= cost:
            debit = await self._ledger.decrement_balance(customer.id, cost)
            if debit.success:
                balance_after = debit.balance_after if debit.balance_after is not None else money(balance - cost)
                await self._ledger.record_movement(customer.id, -cost, balance_after, description)
                invoice = await self._invoices.paid_from_balance(
                    prefix="DID-REN",
                    customer_id=customer.id,
                    invoice_type=InvoiceType.DID_RENEWAL,
                    amount=cost,
                    description=description,
                    period_start=now,
                    period_end=add_months(now, 1),
                    did=linked,
                )
                for did in dids:
                    await self._inventory.advance_renewal(did.id)
                logger.info(
                    "DID renewal from balance: customer %s, invoice %s, %d DID(s), %s charged",
                    customer.id,
                    invoice.invoice_number,
                    len(dids),
                    cost,
                )
                return CustomerRenewal(customer_id, did_ids, cost, RenewalOutcome.BALANCE, invoice.id)
            logger.warning(
                "Renewal debit failed for customer %s (%s); falling back to gateway invoice",
                customer.id,
                debit.error,
            )

        invoice = await self._invoices.pending_gateway(
            prefix="DID-REN",
            customer_id=customer.id,
            invoice_type=InvoiceType.DID_RENEWAL,
            amount=cost,
            description=description,
            period_start=now,
            period_end=add_months(now, 1),
            did=linked,
        )
        logger.info(
            "DID renewal invoice %s for customer %s sent to gateway (%d DID(s), %s)",
            invoice.invoice_number,
            customer.id,
            len(dids),
            cost,
        )
        return CustomerRenewal(customer_id, did_ids, cost, RenewalOutcome.GATEWAY, invoice.id)

    async def run(
        self,
        as_of: date | None = None,
        *,
        customer_id: int | None = None,
        dry_run: bool = False,
    ) -> RenewalStats:
        """Renew every due group; one customer's failure does not stop the rest."""
        as_of = as_of or self._clock.now().date()
        stats = RenewalStats(as_of=as_of, dry_run=dry_run)
        groups = await self.due_by_customer(as_of, customer_id=customer_id)
        logger.info("Renewal sweep for %s: %d customer(s) due", as_of, len(groups))

        for owner_id, dids in groups.items():
            stats.customers_processed += 1
            if dry_run:
                cost = renewal_cost(dids)
                stats.total_amount += cost
                stats.results.append(CustomerRenewal(owner_id, [d.id for d in dids], cost, "dry_run"))
                continue
            try:
                async with self._session.begin_nested():
                    result = await self.renew_customer(owner_id, dids)
            except Exception:
                stats.errors += 1
                logger.error("Renewal failed for customer %s", owner_id, exc_info=True)
                continue

            stats.results.append(result)
            if result.outcome in (RenewalOutcome.BALANCE, RenewalOutcome.FREE):
                stats.renewed_balance += 1
                stats.dids_renewed += len(result.did_ids)
                stats.total_amount += result.amount
            elif result.outcome == RenewalOutcome.GATEWAY:
                stats.sent_gateway += 1
                stats.total_amount += result.amount
            else:
                stats.already_invoiced += 1

        logger.info("Renewal sweep finished: %s", stats.to_dict())
        return stats
