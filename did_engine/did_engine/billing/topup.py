"""Balance top-up invoices.

A top-up is collected by the billing gateway; the balance is only
credited when the paid webhook arrives for the ``balance_topup`` invoice.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.billing.invoices import InvoiceWriter
from did_engine.clock import Clock
from did_engine.errors import CustomerNotFound, InvalidAmount, TopupNotAllowed
from did_engine.state.repository import CustomerRepository
from did_engine.state.tables import BillingMode, InvoiceTable, InvoiceType

logger = logging.getLogger(__name__)

MIN_TOPUP = Decimal("5.00")
MAX_TOPUP = Decimal("1000.00")


def validate_topup_amount(amount: Decimal | str | float) -> Decimal:
    """Parse and bound-check a top-up amount (2 decimals, 5.00 to 1000.00)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    if value.as_tuple().exponent < -2:  # type: ignore[operator]
        raise InvalidAmount("Amount must have at most 2 decimal places", details={"amount": str(value)})
    if value < MIN_TOPUP or value > MAX_TOPUP:
        raise InvalidAmount(
            f"Amount must be between {MIN_TOPUP} and {MAX_TOPUP}",
            details={"amount": str(value), "min": str(MIN_TOPUP), "max": str(MAX_TOPUP)},
        )
    return value.quantize(Decimal("0.01"))


class BalanceTopupService:
    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._customers = CustomerRepository(session)
        self._invoices = InvoiceWriter(session, clock=clock)

    async def create_topup_invoice(self, customer_id: int, amount: Decimal | str | float) -> InvoiceTable:
        """Issue a gateway-collected ``balance_topup`` invoice."""
        value = validate_topup_amount(amount)
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})
        if customer.billing_mode not in BillingMode.BALANCE_BASED:
            raise TopupNotAllowed(
                "Balance top-ups are only available for prepaid customers",
                details={"billing_mode": customer.billing_mode},
            )
        invoice = await self._invoices.pending_gateway(
            prefix="TOPUP",
            customer_id=customer.id,
            invoice_type=InvoiceType.BALANCE_TOPUP,
            amount=value,
            description="Balance top-up",
        )
        logger.info("Top-up invoice %s for customer %s: %s", invoice.invoice_number, customer.id, value)
        return invoice
