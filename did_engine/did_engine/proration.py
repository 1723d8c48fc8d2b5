"""First-period proration for newly acquired DIDs.

All DIDs renew on the 1st of the month.  A DID bought mid-month pays its
setup fee in full plus the monthly fee pro-rated to the days left in the
purchase month; the first renewal is always the 1st of the following month.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from did_engine.clock import days_in_month, first_of_next_month

_CENT = Decimal("0.01")


def money(value: Decimal | float | int | str) -> Decimal:
    """Quantize *value* to cents, rounding half away from zero."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FirstPeriod:
    """Cost of the first (partial) billing period of a DID."""

    setup_fee: Decimal
    monthly_price: Decimal
    prorated_monthly_price: Decimal
    total_due_now: Decimal
    period_start: datetime
    period_end: datetime
    next_renewal_date: date
    days_in_first_period: int
    days_in_month: int
    is_full_month: bool
    breakdown: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "setup_fee": str(self.setup_fee),
            "monthly_price": str(self.monthly_price),
            "prorated_monthly_price": str(self.prorated_monthly_price),
            "total_due_now": str(self.total_due_now),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "next_renewal_date": self.next_renewal_date.isoformat(),
            "days_in_first_period": self.days_in_first_period,
            "days_in_month": self.days_in_month,
            "is_full_month": self.is_full_month,
            "breakdown": self.breakdown,
        }


def calculate_first_period(
    setup_price: Decimal | float | int | str,
    monthly_price: Decimal | float | int | str,
    purchase_date: date | datetime,
) -> FirstPeriod:
    """Compute the first-period charge for a DID bought on *purchase_date*.

    Parameters
    ----------
    setup_price:
        One-time setup fee, charged in full.
    monthly_price:
        Recurring monthly fee, pro-rated for the purchase month.
    purchase_date:
        Day of purchase.  A ``datetime`` keeps its timezone; the period
        starts at 00:00 of that day.

    Returns
    -------
    FirstPeriod
        Amounts rounded to cents, the billed period and the renewal date.
    """
    setup = money(setup_price)
    monthly = money(monthly_price)

    tzinfo = purchase_date.tzinfo if isinstance(purchase_date, datetime) else None
    day = purchase_date.date() if isinstance(purchase_date, datetime) else purchase_date

    month_days = days_in_month(day.year, day.month)
    next_renewal = first_of_next_month(day)
    days = max(1, (next_renewal - day).days)

    prorated = money(monthly / Decimal(month_days) * Decimal(days))
    total = money(setup + prorated)

    period_start = datetime.combine(day, time.min, tzinfo=tzinfo)
    period_end = datetime.combine(day.replace(day=month_days), time(23, 59, 59), tzinfo=tzinfo)
    is_full_month = days >= month_days

    breakdown: list[dict[str, Any]] = []
    if setup > 0:
        breakdown.append({"description": "Setup fee", "amount": str(setup)})
    if is_full_month:
        breakdown.append({"description": "Monthly fee (full month)", "amount": str(prorated)})
    else:
        breakdown.append(
            {
                "description": f"Monthly fee (prorated: {days} of {month_days} days)",
                "amount": str(prorated),
            }
        )

    return FirstPeriod(
        setup_fee=setup,
        monthly_price=monthly,
        prorated_monthly_price=prorated,
        total_due_now=total,
        period_start=period_start,
        period_end=period_end,
        next_renewal_date=next_renewal,
        days_in_first_period=days,
        days_in_month=month_days,
        is_full_month=is_full_month,
        breakdown=breakdown,
    )
