"""Push gateway-collected invoices to the billing gateway.

An invoice the gateway must collect is written with ``sync_status=pending``.
The sync sweep creates it in the gateway, stores the gateway's invoice id
and marks it ``synced``.  The gateway invoice carries ``Provider:<id>`` in
its notes, which is how the payment webhooks find ours again.

Failures are counted on the invoice.  After a retryable failure the next
sweep waits out a backoff (30 s, 60 s, 5 min, 15 min, 1 h) before trying
again.  The fifth failure, or any permanent one, marks the invoice
``failed`` for an operator to look at.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock, as_utc
from did_engine.errors import GatewayApiError
from did_engine.proration import money
from did_engine.state.repository import CustomerRepository, InvoiceRepository
from did_engine.state.tables import CustomerTable, InvoiceTable, InvoiceType, SyncStatus

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = (30, 60, 300, 900, 3600)
MAX_SYNC_ATTEMPTS = 5
PAYMENT_TERM_DAYS = 30


@dataclass(frozen=True)
class GatewayInvoiceRequest:
    """One invoice as the billing gateway sees it."""

    client_id: int
    description: str
    amount: Decimal
    issued_on: date
    due_on: date
    notes: str


class BillingGatewayClient(Protocol):
    async def create_invoice(self, request: GatewayInvoiceRequest) -> str:
        """Create the invoice and return the gateway's id for it.

        Raises :class:`~did_engine.errors.GatewayApiError` on failure.
        """
        ...


class SyncOutcome:
    SYNCED = "synced"
    RETRY = "retry"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"
    WAITING = "waiting"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class InvoiceSync:
    invoice_id: int
    outcome: str
    external_invoice_id: str | None = None
    error: str | None = None


@dataclass
class SyncStats:
    """Counters for one sync sweep."""

    dry_run: bool = False
    invoices_checked: int = 0
    synced: int = 0
    retrying: int = 0
    failed: int = 0
    not_applicable: int = 0
    waiting: int = 0
    errors: int = 0
    results: list[InvoiceSync] = field(default_factory=list)

    def record(self, result: InvoiceSync) -> None:
        self.results.append(result)
        if result.outcome == SyncOutcome.SYNCED:
            self.synced += 1
        elif result.outcome == SyncOutcome.RETRY:
            self.retrying += 1
        elif result.outcome == SyncOutcome.FAILED:
            self.failed += 1
        elif result.outcome == SyncOutcome.NOT_APPLICABLE:
            self.not_applicable += 1
        elif result.outcome == SyncOutcome.WAITING:
            self.waiting += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "invoices_checked": self.invoices_checked,
            "synced": self.synced,
            "retrying": self.retrying,
            "failed": self.failed,
            "not_applicable": self.not_applicable,
            "waiting": self.waiting,
            "errors": self.errors,
        }


def backoff_delay(attempts: int) -> timedelta:
    """Wait before the next try after *attempts* failures."""
    if attempts <= 0:
        return timedelta(0)
    return timedelta(seconds=BACKOFF_SECONDS[min(attempts - 1, len(BACKOFF_SECONDS) - 1)])


def describe_invoice(invoice: InvoiceTable, customer: CustomerTable) -> str:
    """Line-item text shown on the gateway invoice."""
    if invoice.invoice_type == InvoiceType.DID_PURCHASE:
        return f"DID purchase - {invoice.ddi_e164}" if invoice.ddi_e164 else "DID purchase"
    if invoice.invoice_type == InvoiceType.DID_RENEWAL:
        if invoice.ddi_e164:
            return f"DID monthly rental - {invoice.ddi_e164}"
        return invoice.description or "DID monthly rental"
    if invoice.invoice_type == InvoiceType.BALANCE_TOPUP:
        return f"Balance top-up - {customer.name}"
    if invoice.invoice_type == InvoiceType.STANDARD:
        return f"Monthly invoice #{invoice.invoice_number}"
    return f"Invoice #{invoice.id}"


class InvoiceSyncService:
    """Creates pending invoices in the billing gateway.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    client:
        Billing gateway client.
    clock:
        Time source for backoff and the invoice dates.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        client: BillingGatewayClient,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._client = client
        self._clock = clock or SystemClock()
        self._customers = CustomerRepository(session)
        self._invoices = InvoiceRepository(session)

    @staticmethod
    def is_due(invoice: InvoiceTable, now: datetime) -> bool:
        """Whether the backoff after the last failed attempt has elapsed."""
        if invoice.sync_attempts <= 0 or invoice.sync_attempted_at is None:
            return True
        return as_utc(invoice.sync_attempted_at) + backoff_delay(invoice.sync_attempts) <= now

    async def sync_invoice(self, invoice: InvoiceTable) -> InvoiceSync:
        """Create *invoice* in the gateway, or record why that failed."""
        if invoice.sync_status != SyncStatus.PENDING or invoice.paid_at is not None:
            return InvoiceSync(invoice.id, SyncOutcome.SKIPPED)

        customer = await self._customers.get(invoice.customer_id)
        if customer is None or customer.gateway_client_id is None:
            await self._invoices.update_pending_sync(invoice.id, sync_status=SyncStatus.NOT_APPLICABLE)
            logger.info("Invoice %s: customer %s has no gateway account", invoice.id, invoice.customer_id)
            return InvoiceSync(invoice.id, SyncOutcome.NOT_APPLICABLE)

        now = self._clock.now()
        if not self.is_due(invoice, now):
            return InvoiceSync(invoice.id, SyncOutcome.WAITING)

        request = GatewayInvoiceRequest(
            client_id=customer.gateway_client_id,
            description=describe_invoice(invoice, customer),
            amount=money(invoice.total_amount),
            issued_on=now.date(),
            due_on=(now + timedelta(days=PAYMENT_TERM_DAYS)).date(),
            notes=f"Provider:{invoice.id}",
        )
        try:
            external_id = await self._client.create_invoice(request)
        except GatewayApiError as exc:
            return await self._record_failure(invoice, exc, now)

        stored = await self._invoices.update_pending_sync(
            invoice.id,
            sync_status=SyncStatus.SYNCED,
            external_invoice_id=external_id,
            synced_at=now,
            sync_attempted_at=now,
            sync_error=None,
        )
        if not stored:
            logger.warning("Invoice %s was paid while syncing; gateway invoice %s left as is", invoice.id, external_id)
            return InvoiceSync(invoice.id, SyncOutcome.SKIPPED, external_id)
        logger.info("Invoice %s synced to gateway as #%s", invoice.id, external_id)
        return InvoiceSync(invoice.id, SyncOutcome.SYNCED, external_id)

    async def _record_failure(self, invoice: InvoiceTable, exc: GatewayApiError, now: datetime) -> InvoiceSync:
        attempts = invoice.sync_attempts + 1
        permanent = not exc.retryable or attempts >= MAX_SYNC_ATTEMPTS
        values: dict[str, Any] = {
            "sync_attempts": attempts,
            "sync_error": exc.message,
            "sync_attempted_at": now,
        }
        if permanent:
            values["sync_status"] = SyncStatus.FAILED
        await self._invoices.update_pending_sync(invoice.id, **values)

        if permanent:
            logger.error(
                "Invoice %s sync failed permanently after %d attempt(s): %s",
                invoice.id,
                attempts,
                exc.message,
            )
            return InvoiceSync(invoice.id, SyncOutcome.FAILED, error=exc.message)
        logger.warning(
            "Invoice %s sync attempt %d/%d failed: %s (retry in %ds)",
            invoice.id,
            attempts,
            MAX_SYNC_ATTEMPTS,
            exc.message,
            int(backoff_delay(attempts).total_seconds()),
        )
        return InvoiceSync(invoice.id, SyncOutcome.RETRY, error=exc.message)

    async def run(self, *, limit: int | None = None, dry_run: bool = False) -> SyncStats:
        """Sync every pending invoice; one invoice's failure does not stop the rest."""
        stats = SyncStats(dry_run=dry_run)
        now = self._clock.now()
        pending = await self._invoices.list_pending_sync(limit=limit)
        logger.info("Invoice sync sweep: %d pending invoice(s)", len(pending))

        for invoice in pending:
            stats.invoices_checked += 1
            if dry_run:
                outcome = SyncOutcome.DRY_RUN if self.is_due(invoice, now) else SyncOutcome.WAITING
                stats.record(InvoiceSync(invoice.id, outcome))
                continue
            try:
                async with self._session.begin_nested():
                    result = await self.sync_invoice(invoice)
            except Exception:
                stats.errors += 1
                logger.error("Invoice sync failed for invoice %s", invoice.id, exc_info=True)
                continue
            stats.record(result)

        logger.info("Invoice sync sweep finished: %s", stats.to_dict())
        return stats
