"""Repository classes providing access to the DID engine state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated keys are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Reads that feed a state transition go through ``populate_existing`` so the
identity map never hands back a row as it looked earlier in the request.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.state.tables import (
    ByonVerificationTable,
    CountryTable,
    CustomerTable,
    DidOrderTable,
    DidStatus,
    DidTable,
    InvoiceTable,
    InvoiceType,
    LedgerMovementTable,
    OrderStatus,
    SyncStatus,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


async def _fresh_one(session: AsyncSession, stmt: Select[Any]) -> Any:
    """Execute *stmt* bypassing stale identity-map state; return one row or ``None``."""
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalars().first()


def _guarded_update(table: Any, key: Any, expected: dict[str, Any], values: dict[str, Any]) -> Any:
    """Build ``UPDATE table SET values WHERE key AND expected``.

    ``None`` in *expected* compiles to ``IS NULL``.
    """
    stmt = update(table).where(key)
    for column_name, value in expected.items():
        column = getattr(table, column_name)
        stmt = stmt.where(column.is_(None) if value is None else column == value)
    return stmt.values(**values).execution_options(synchronize_session=False)


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class CustomerRepository:
    """Customer lookup and balance arithmetic."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        name: str,
        *,
        tenant_id: str = "default",
        billing_mode: str = "prepaid",
        balance: Decimal = Decimal("0.00"),
        byon_limit: int | None = None,
        gateway_client_id: int | None = None,
    ) -> CustomerTable:
        row = CustomerTable(
            tenant_id=tenant_id,
            name=name,
            billing_mode=billing_mode,
            balance=balance,
            byon_limit=byon_limit,
            gateway_client_id=gateway_client_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, customer_id: int) -> CustomerTable | None:
        return await _fresh_one(self._session, select(CustomerTable).where(CustomerTable.id == customer_id))

    async def debit(self, customer_id: int, amount: Decimal) -> bool:
        """Subtract *amount* only if the balance still covers it.

        Returns ``True`` when exactly one row was debited.
        """
        stmt = (
            update(CustomerTable)
            .where(CustomerTable.id == customer_id, CustomerTable.balance >= amount)
            .values(balance=CustomerTable.balance - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def credit(self, customer_id: int, amount: Decimal) -> bool:
        stmt = (
            update(CustomerTable)
            .where(CustomerTable.id == customer_id)
            .values(balance=CustomerTable.balance + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1


class LedgerMovementRepository:
    """Append-only balance movements."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        customer_id: int,
        amount: Decimal,
        balance_after: Decimal,
        concept: str,
        *,
        created_at: datetime | None = None,
    ) -> LedgerMovementTable:
        row = LedgerMovementTable(
            customer_id=customer_id,
            amount=amount,
            balance_after=balance_after,
            concept=concept,
        )
        if created_at is not None:
            row.created_at = created_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_customer(self, customer_id: int) -> list[LedgerMovementTable]:
        stmt = (
            select(LedgerMovementTable)
            .where(LedgerMovementTable.customer_id == customer_id)
            .order_by(LedgerMovementTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class CountryRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, iso_code: str, name: str, dial_code: str) -> CountryTable:
        row = CountryTable(iso_code=iso_code, name=name, dial_code=dial_code)
        self._session.add(row)
        await self._session.flush()
        return row

    async def find_by_dial_code(self, dial_code: str) -> CountryTable | None:
        stmt = select(CountryTable).where(CountryTable.dial_code == dial_code).order_by(CountryTable.id).limit(1)
        result = await self._session.execute(stmt)
        return result.scalars().first()


# ---------------------------------------------------------------------------
# DIDs
# ---------------------------------------------------------------------------


class DidRepository:
    """DID rows.  Status changes go through :meth:`compare_and_set` only."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        e164: str,
        *,
        national_number: str | None = None,
        setup_price: Decimal = Decimal("0.00"),
        monthly_price: Decimal = Decimal("0.00"),
        country_id: int | None = None,
        **fields: Any,
    ) -> DidTable:
        """Insert a DID.  Defaults to ``available`` inventory."""
        row = DidTable(
            e164=e164,
            national_number=national_number if national_number is not None else e164.lstrip("+"),
            setup_price=setup_price,
            monthly_price=monthly_price,
            country_id=country_id,
            status=fields.pop("status", DidStatus.AVAILABLE),
            **fields,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, did_id: int) -> DidTable | None:
        return await _fresh_one(self._session, select(DidTable).where(DidTable.id == did_id))

    async def get_by_e164(self, e164: str) -> DidTable | None:
        return await _fresh_one(self._session, select(DidTable).where(DidTable.e164 == e164))

    async def compare_and_set(self, did_id: int, expected: dict[str, Any], values: dict[str, Any]) -> bool:
        """Apply *values* only if the row still matches *expected*.

        Returns ``True`` when exactly one row changed.
        """
        stmt = _guarded_update(DidTable, DidTable.id == did_id, expected, values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def list_due_for_renewal(self, as_of: date, *, customer_id: int | None = None) -> list[DidTable]:
        """Assigned, billable DIDs whose renewal cursor is on or before *as_of*."""
        stmt = select(DidTable).where(
            DidTable.status == DidStatus.ASSIGNED,
            DidTable.is_byon.is_(False),
            DidTable.next_renewal_at.is_not(None),
            DidTable.next_renewal_at <= as_of,
        )
        if customer_id is not None:
            stmt = stmt.where(DidTable.owner_customer_id == customer_id)
        stmt = stmt.order_by(DidTable.owner_customer_id, DidTable.id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_owned_due(self, customer_id: int, up_to: date, *, paid_only: bool = True) -> list[DidTable]:
        """DIDs of *customer_id* still due on or before *up_to*."""
        stmt = select(DidTable).where(
            DidTable.owner_customer_id == customer_id,
            DidTable.status == DidStatus.ASSIGNED,
            DidTable.next_renewal_at <= up_to,
        )
        if paid_only:
            stmt = stmt.where(DidTable.monthly_price > 0)
        stmt = stmt.order_by(DidTable.id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_byon(self, customer_id: int) -> int:
        stmt = select(func.count(DidTable.id)).where(
            DidTable.owner_customer_id == customer_id,
            DidTable.is_byon.is_(True),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> InvoiceTable:
        row = InvoiceTable(**values)
        self._session.add(row)
        await self._session.flush()
        logger.info(
            "Created invoice %s type=%s customer=%s total=%s",
            row.invoice_number,
            row.invoice_type,
            row.customer_id,
            row.total_amount,
        )
        return row

    async def get(self, invoice_id: int) -> InvoiceTable | None:
        return await _fresh_one(self._session, select(InvoiceTable).where(InvoiceTable.id == invoice_id))

    async def number_exists(self, invoice_number: str) -> bool:
        stmt = select(func.count(InvoiceTable.id)).where(InvoiceTable.invoice_number == invoice_number)
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def unique_number(self, base: str) -> str:
        """Return *base*, or *base* with a ``-N`` suffix if it is already taken."""
        candidate = base
        suffix = 1
        while await self.number_exists(candidate):
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    async def update(self, invoice: InvoiceTable, **values: Any) -> InvoiceTable:
        for key, value in values.items():
            setattr(invoice, key, value)
        await self._session.flush()
        return invoice

    async def mark_paid_if_unpaid(
        self,
        invoice_id: int,
        *,
        paid_via: str,
        paid_at: datetime,
        external_invoice_id: str | None = None,
    ) -> bool:
        """Record a payment unless one is already recorded.

        A ``pending`` sync status moves to ``synced``: the gateway could not
        have collected an invoice it never received.  Returns ``True`` if
        this call recorded the payment.
        """
        stmt = (
            update(InvoiceTable)
            .where(InvoiceTable.id == invoice_id, InvoiceTable.paid_at.is_(None))
            .values(
                paid_via=paid_via,
                paid_at=paid_at,
                sync_status=case(
                    (InvoiceTable.sync_status == SyncStatus.PENDING, SyncStatus.SYNCED),
                    else_=InvoiceTable.sync_status,
                ),
                synced_at=func.coalesce(InvoiceTable.synced_at, paid_at),
                external_invoice_id=func.coalesce(InvoiceTable.external_invoice_id, external_invoice_id),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def find_open_renewal(self, customer_id: int, covering: datetime) -> InvoiceTable | None:
        """Unpaid gateway renewal invoice whose period still covers *covering*."""
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.customer_id == customer_id,
                InvoiceTable.invoice_type == InvoiceType.DID_RENEWAL,
                InvoiceTable.paid_at.is_(None),
                InvoiceTable.sync_status.in_((SyncStatus.PENDING, SyncStatus.SYNCED)),
                InvoiceTable.period_end >= covering,
            )
            .order_by(InvoiceTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def update_pending_sync(self, invoice_id: int, **values: Any) -> bool:
        """Apply *values* while the invoice is still unpaid and ``pending`` sync.

        A paid webhook that lands mid-sync wins; returns ``False`` then.
        """
        stmt = _guarded_update(
            InvoiceTable,
            InvoiceTable.id == invoice_id,
            {"sync_status": SyncStatus.PENDING, "paid_at": None},
            values,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def list_pending_sync(self, *, limit: int | None = None) -> list[InvoiceTable]:
        """Unpaid invoices still waiting to reach the billing gateway, oldest first."""
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.sync_status == SyncStatus.PENDING, InvoiceTable.paid_at.is_(None))
            .order_by(InvoiceTable.created_at, InvoiceTable.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_for_customer(self, customer_id: int, *, invoice_type: str | None = None) -> list[InvoiceTable]:
        stmt = select(InvoiceTable).where(InvoiceTable.customer_id == customer_id)
        if invoice_type is not None:
            stmt = stmt.where(InvoiceTable.invoice_type == invoice_type)
        result = await self._session.execute(stmt.order_by(InvoiceTable.id))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class DidOrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> DidOrderTable:
        row = DidOrderTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, order_id: int) -> DidOrderTable | None:
        return await _fresh_one(self._session, select(DidOrderTable).where(DidOrderTable.id == order_id))

    async def transition(self, order_id: int, to_status: str, **values: Any) -> bool:
        """Move a ``pending_approval`` order to *to_status*.

        The WHERE clause pins the source status, so a terminal order is
        never rewritten.  Returns ``True`` when the row changed.
        """
        stmt = _guarded_update(
            DidOrderTable,
            DidOrderTable.id == order_id,
            {"status": OrderStatus.PENDING_APPROVAL},
            {"status": to_status, **values},
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def list_pending(self) -> list[DidOrderTable]:
        stmt = (
            select(DidOrderTable)
            .where(DidOrderTable.status == OrderStatus.PENDING_APPROVAL)
            .order_by(DidOrderTable.requested_at, DidOrderTable.id)
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# BYON verifications
# ---------------------------------------------------------------------------


class ByonVerificationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> ByonVerificationTable:
        row = ByonVerificationTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, verification_id: int) -> ByonVerificationTable | None:
        stmt = select(ByonVerificationTable).where(ByonVerificationTable.id == verification_id)
        return await _fresh_one(self._session, stmt)

    async def find_latest(self, phone_number: str, customer_id: int) -> ByonVerificationTable | None:
        """Newest verification of any status for the phone/customer pair."""
        stmt = (
            select(ByonVerificationTable)
            .where(
                ByonVerificationTable.phone_number == phone_number,
                ByonVerificationTable.customer_id == customer_id,
            )
            .order_by(ByonVerificationTable.created_at.desc(), ByonVerificationTable.id.desc())
            .limit(1)
        )
        return await _fresh_one(self._session, stmt)

    async def find_latest_pending(self, phone_number: str, customer_id: int) -> ByonVerificationTable | None:
        stmt = (
            select(ByonVerificationTable)
            .where(
                ByonVerificationTable.phone_number == phone_number,
                ByonVerificationTable.customer_id == customer_id,
                ByonVerificationTable.status == VerificationStatus.PENDING,
            )
            .order_by(ByonVerificationTable.created_at.desc(), ByonVerificationTable.id.desc())
            .limit(1)
        )
        return await _fresh_one(self._session, stmt)

    async def count_since(self, customer_id: int, since: datetime) -> int:
        stmt = select(func.count(ByonVerificationTable.id)).where(
            ByonVerificationTable.customer_id == customer_id,
            ByonVerificationTable.created_at >= since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def update(self, verification: ByonVerificationTable, **values: Any) -> ByonVerificationTable:
        for key, value in values.items():
            setattr(verification, key, value)
        await self._session.flush()
        return verification
