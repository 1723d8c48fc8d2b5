"""Unit tests for the SQL-backed balance ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest
from did_engine.errors import CustomerNotFound
from did_engine.ledger import SqlBalanceLedger
from did_engine.state.repository import CustomerRepository, LedgerMovementRepository


@pytest.mark.asyncio
async def test_debit_is_guarded_by_balance(async_session, clock, prepaid_customer) -> None:
    ledger = SqlBalanceLedger(async_session, clock=clock)

    refused = await ledger.decrement_balance(prepaid_customer.id, Decimal("50.01"))
    accepted = await ledger.decrement_balance(prepaid_customer.id, Decimal("50.00"))

    assert refused.success is False
    assert accepted.success is True
    assert accepted.balance_after == Decimal("0.00")


@pytest.mark.asyncio
async def test_rejects_negative_debit_and_non_positive_credit(async_session, clock, prepaid_customer) -> None:
    ledger = SqlBalanceLedger(async_session, clock=clock)

    assert (await ledger.decrement_balance(prepaid_customer.id, Decimal("-1"))).success is False
    assert (await ledger.increment_balance(prepaid_customer.id, Decimal("0"))).success is False
    customer = await CustomerRepository(async_session).get(prepaid_customer.id)
    assert customer.balance == Decimal("50.00")


@pytest.mark.asyncio
async def test_credit_unknown_customer(async_session, clock) -> None:
    result = await SqlBalanceLedger(async_session, clock=clock).increment_balance(404, Decimal("10"))

    assert result.success is False


@pytest.mark.asyncio
async def test_get_balance_checks_tenant(async_session, clock, prepaid_customer) -> None:
    ledger = SqlBalanceLedger(async_session, clock=clock)

    assert await ledger.get_balance("default", prepaid_customer.id) == Decimal("50.00")
    with pytest.raises(CustomerNotFound):
        await ledger.get_balance("someone-else", prepaid_customer.id)


@pytest.mark.asyncio
async def test_movements_are_timestamped_by_clock(async_session, clock, prepaid_customer) -> None:
    ledger = SqlBalanceLedger(async_session, clock=clock)

    await ledger.record_movement(prepaid_customer.id, Decimal("12.5"), Decimal("62.5"), "Manual credit")

    [movement] = await LedgerMovementRepository(async_session).list_for_customer(prepaid_customer.id)
    assert movement.amount == Decimal("12.50")
    assert movement.balance_after == Decimal("62.50")
    assert movement.created_at == clock.now()
