"""Invoice construction shared by the purchase, renewal, order and top-up paths."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock
from did_engine.proration import money
from did_engine.state.repository import InvoiceRepository
from did_engine.state.tables import DidTable, InvoiceStatus, InvoiceTable, PaidVia, SyncStatus

logger = logging.getLogger(__name__)


def invoice_number(prefix: str, customer_id: int, at: datetime) -> str:
    """``{prefix}-{customer}-{YYYYmmddHHMMSS}``."""
    return f"{prefix}-{customer_id}-{at.strftime('%Y%m%d%H%M%S')}"


def did_list_summary(label: str, dids: list[DidTable], *, shown: int = 3) -> str:
    """``label: a, b, c (+N more)``."""
    numbers = [d.e164 for d in dids]
    head = ", ".join(numbers[:shown])
    if len(numbers) > shown:
        return f"{label}: {head} (+{len(numbers) - shown} more)"
    return f"{label}: {head}"


class InvoiceWriter:
    """Writes invoices in one of the two settlement shapes.

    * paid from balance: ``paid_via=balance``, ``sync_status=not_applicable``
    * collected by the gateway: unpaid, ``sync_status=pending``
    """

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._invoices = InvoiceRepository(session)
        self._clock = clock or SystemClock()

    async def _create(
        self,
        *,
        prefix: str,
        customer_id: int,
        invoice_type: str,
        amount: Decimal,
        description: str,
        period_start: datetime | None,
        period_end: datetime | None,
        did: DidTable | None,
        paid: bool,
    ) -> InvoiceTable:
        now = self._clock.now()
        number = await self._invoices.unique_number(invoice_number(prefix, customer_id, now))
        amount = money(amount)
        values: dict[str, object] = {
            "customer_id": customer_id,
            "invoice_number": number,
            "invoice_type": invoice_type,
            "status": InvoiceStatus.CREATED,
            "amount": amount,
            "tax_amount": Decimal("0.00"),
            "total_amount": amount,
            "description": description,
            "period_start": period_start,
            "period_end": period_end,
            "did_id": did.id if did is not None else None,
            "ddi_e164": did.e164 if did is not None else None,
            "created_at": now,
        }
        if paid:
            values.update(paid_via=PaidVia.BALANCE, paid_at=now, sync_status=SyncStatus.NOT_APPLICABLE)
        else:
            values.update(paid_via=None, paid_at=None, sync_status=SyncStatus.PENDING)
        return await self._invoices.create(**values)

    async def paid_from_balance(
        self,
        *,
        prefix: str,
        customer_id: int,
        invoice_type: str,
        amount: Decimal,
        description: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        did: DidTable | None = None,
    ) -> InvoiceTable:
        return await self._create(
            prefix=prefix,
            customer_id=customer_id,
            invoice_type=invoice_type,
            amount=amount,
            description=description,
            period_start=period_start,
            period_end=period_end,
            did=did,
            paid=True,
        )

    async def pending_gateway(
        self,
        *,
        prefix: str,
        customer_id: int,
        invoice_type: str,
        amount: Decimal,
        description: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        did: DidTable | None = None,
    ) -> InvoiceTable:
        return await self._create(
            prefix=prefix,
            customer_id=customer_id,
            invoice_type=invoice_type,
            amount=amount,
            description=description,
            period_start=period_start,
            period_end=period_end,
            did=did,
            paid=False,
        )
