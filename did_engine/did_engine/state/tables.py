"""SQLAlchemy 2.0 ORM table definitions for the DID engine state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  Money
columns are ``Numeric(12, 2)`` and map to :class:`decimal.Decimal`.  The
lifecycle invariants that can be expressed per row are enforced with
CHECK constraints as a second line of defence behind the state machine.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_Money = Numeric(12, 2)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------


class DidStatus:
    AVAILABLE = "available"
    RESERVED = "reserved"
    ASSIGNED = "assigned"
    SUSPENDED = "suspended"
    DISABLED = "disabled"

    ALL = (AVAILABLE, RESERVED, ASSIGNED, SUSPENDED, DISABLED)


class InvoiceType:
    STANDARD = "standard"
    DID_PURCHASE = "did_purchase"
    DID_RENEWAL = "did_renewal"
    BALANCE_TOPUP = "balance_topup"

    ALL = (STANDARD, DID_PURCHASE, DID_RENEWAL, BALANCE_TOPUP)


class InvoiceStatus:
    WAITING = "waiting"
    PROCESSING = "processing"
    CREATED = "created"
    ERROR = "error"

    ALL = (WAITING, PROCESSING, CREATED, ERROR)


class SyncStatus:
    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"

    ALL = (NOT_APPLICABLE, PENDING, SYNCED, FAILED)


class PaidVia:
    BALANCE = "balance"
    WHMCS = "whmcs"

    ALL = (BALANCE, WHMCS)


class OrderStatus:
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    ALL = (PENDING_APPROVAL, APPROVED, REJECTED, EXPIRED)
    TERMINAL = (APPROVED, REJECTED, EXPIRED)


class VerificationStatus:
    PENDING = "pending"
    APPROVED = "approved"
    EXPIRED = "expired"
    FAILED = "failed"

    ALL = (PENDING, APPROVED, EXPIRED, FAILED)


class BillingMode:
    PREPAID = "prepaid"
    PSEUDOPREPAID = "pseudoprepaid"
    POSTPAID = "postpaid"

    ALL = (PREPAID, PSEUDOPREPAID, POSTPAID)
    BALANCE_BASED = (PREPAID, PSEUDOPREPAID)


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all DID engine tables."""


# ---------------------------------------------------------------------------
# Customers & ledger
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """A billable customer with an internal prepaid balance."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    billing_mode: Mapped[str] = mapped_column(String(32), nullable=False, default=BillingMode.PREPAID)
    balance: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    byon_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Client id in the billing gateway; invoices of unlinked customers are never synced.
    gateway_client_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("billing_mode", BillingMode.ALL), name="ck_customers_billing_mode"),
        Index("ix_customers_tenant", "tenant_id"),
    )


class LedgerMovementTable(Base):
    """Append-only record of every balance change."""

    __tablename__ = "ledger_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    concept: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_ledger_movements_customer", "customer_id", "created_at"),)


class CountryTable(Base):
    """Country reference data used for BYON number classification."""

    __tablename__ = "countries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    iso_code: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    dial_code: Mapped[str] = mapped_column(String(8), nullable=False)

    __table_args__ = (Index("ix_countries_dial_code", "dial_code"),)


# ---------------------------------------------------------------------------
# DIDs
# ---------------------------------------------------------------------------


class DidTable(Base):
    """A phone number resource and its lifecycle state."""

    __tablename__ = "dids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    e164: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    national_number: Mapped[str] = mapped_column(String(32), nullable=False)
    country_id: Mapped[int | None] = mapped_column(ForeignKey("countries.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DidStatus.AVAILABLE)
    owner_customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    setup_price: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    monthly_price: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    next_renewal_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reserved_for_customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    reserved_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_byon: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    byon_verification_id: Mapped[int | None] = mapped_column(ForeignKey("byon_verifications.id"), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_in("status", DidStatus.ALL), name="ck_dids_status"),
        CheckConstraint("setup_price >= 0 AND monthly_price >= 0", name="ck_dids_prices"),
        CheckConstraint(
            "(status = 'assigned' AND owner_customer_id IS NOT NULL AND next_renewal_at IS NOT NULL)"
            " OR (status <> 'assigned' AND owner_customer_id IS NULL)",
            name="ck_dids_owner_iff_assigned",
        ),
        CheckConstraint(
            "status <> 'reserved' OR (reserved_for_customer_id IS NOT NULL AND reserved_until IS NOT NULL)",
            name="ck_dids_reservation",
        ),
        Index("ix_dids_owner", "owner_customer_id"),
        Index("ix_dids_status", "status"),
        Index("ix_dids_renewal", "status", "next_renewal_at"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Customer invoice, settled from balance or collected by the billing gateway."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    invoice_type: Mapped[str] = mapped_column(String(32), nullable=False, default=InvoiceType.STANDARD)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InvoiceStatus.WAITING)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    did_id: Mapped[int | None] = mapped_column(ForeignKey("dids.id", ondelete="SET NULL"), nullable=True)
    ddi_e164: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.NOT_APPLICABLE)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_via: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("invoice_type", InvoiceType.ALL), name="ck_invoices_type"),
        CheckConstraint(_in("status", InvoiceStatus.ALL), name="ck_invoices_status"),
        CheckConstraint(_in("sync_status", SyncStatus.ALL), name="ck_invoices_sync_status"),
        CheckConstraint(
            "paid_via IS NULL OR " + _in("paid_via", PaidVia.ALL),
            name="ck_invoices_paid_via",
        ),
        CheckConstraint(
            "paid_via IS NULL OR paid_via <> 'balance' OR sync_status = 'not_applicable'",
            name="ck_invoices_balance_not_synced",
        ),
        CheckConstraint(
            "sync_status <> 'pending' OR paid_via IS NULL",
            name="ck_invoices_pending_unpaid",
        ),
        Index("ix_invoices_customer", "customer_id", "created_at"),
        Index("ix_invoices_sync", "sync_status"),
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class DidOrderTable(Base):
    """A deferred-billing DID request awaiting administrator approval."""

    __tablename__ = "did_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    did_id: Mapped[int | None] = mapped_column(ForeignKey("dids.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=OrderStatus.PENDING_APPROVAL)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    setup_fee: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    monthly_fee: Mapped[Decimal] = mapped_column(_Money, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", OrderStatus.ALL), name="ck_did_orders_status"),
        Index("ix_did_orders_customer", "customer_id"),
        Index("ix_did_orders_status", "status"),
    )


# ---------------------------------------------------------------------------
# BYON verifications
# ---------------------------------------------------------------------------


class ByonVerificationTable(Base):
    """One OTP verification attempt for a bring-your-own number."""

    __tablename__ = "byon_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=VerificationStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", VerificationStatus.ALL), name="ck_byon_verifications_status"),
        Index("ix_byon_verifications_lookup", "phone_number", "customer_id", "status"),
        Index("ix_byon_verifications_daily", "customer_id", "created_at"),
    )
