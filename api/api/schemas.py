"""Shared Pydantic request and response models for API endpoints.

Routers import from here to avoid duplication.  Money fields are
serialised as strings so no precision is lost in JSON.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Entity views
# ---------------------------------------------------------------------------


class _OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DidResponse(_OrmModel):
    """A DID as seen by its owner or an administrator."""

    id: int
    e164: str
    national_number: str
    status: str
    setup_price: Decimal
    monthly_price: Decimal
    owner_customer_id: int | None = None
    assigned_at: datetime | None = None
    next_renewal_at: date | None = None
    is_byon: bool = False
    description: str | None = None


class InvoiceResponse(_OrmModel):
    id: int
    invoice_number: str
    customer_id: int
    invoice_type: str
    status: str
    total_amount: Decimal
    sync_status: str
    paid_via: str | None = None
    paid_at: datetime | None = None
    did_id: int | None = None
    ddi_e164: str | None = None


class OrderResponse(_OrmModel):
    id: int
    customer_id: int
    did_id: int | None = None
    status: str
    requested_at: datetime
    setup_fee: Decimal
    monthly_fee: Decimal
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TopupRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount to add, 5.00 to 1000.00 with at most two decimals")


class RenewalRunRequest(BaseModel):
    as_of: date | None = Field(default=None, description="Renewal date; defaults to today (UTC)")
    customer_id: int | None = None
    dry_run: bool = False


class OrderCreateRequest(BaseModel):
    did_id: int


class OrderRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class OrderExpireRequest(BaseModel):
    dry_run: bool = False


class ByonInitiateRequest(BaseModel):
    phone_number: str = Field(..., max_length=32, description="Number in E.164 format, e.g. +14155551234")


class ByonVerifyRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)
    code: str = Field(..., min_length=1, max_length=10)


# ---------------------------------------------------------------------------
# Composite responses
# ---------------------------------------------------------------------------


class ReleaseResponse(BaseModel):
    released: bool
    did: DidResponse


class CanReleaseResponse(BaseModel):
    did_id: int
    can_release: bool


class ApprovalResponse(BaseModel):
    order: OrderResponse
    did: DidResponse
    invoice: InvoiceResponse | None = None
