"""Unit tests for customer-initiated DID release."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from did_engine.billing import DidPurchaseService, DidReleaseService
from did_engine.errors import ByonCannotRelease, DidNotFound, DidNotOwned
from did_engine.state.repository import CustomerRepository, DidRepository, LedgerMovementRepository
from did_engine.state.tables import DidStatus


@pytest.mark.asyncio
async def test_release_returns_number_without_refund(async_session, clock, prepaid_customer, available_did) -> None:
    await DidPurchaseService(async_session, clock=clock).purchase(prepaid_customer.id, available_did.id)
    service = DidReleaseService(async_session, clock=clock)

    assert await service.can_release(prepaid_customer.id, available_did.id) is True
    did = await service.release(prepaid_customer.id, available_did.id)

    assert did.status == DidStatus.AVAILABLE
    assert did.owner_customer_id is None
    customer = await CustomerRepository(async_session).get(prepaid_customer.id)
    assert customer.balance == Decimal("42.52")
    movements = await LedgerMovementRepository(async_session).list_for_customer(prepaid_customer.id)
    assert len(movements) == 1


@pytest.mark.asyncio
async def test_cannot_release_someone_elses_did(async_session, clock, prepaid_customer, available_did) -> None:
    await DidPurchaseService(async_session, clock=clock).purchase(prepaid_customer.id, available_did.id)
    intruder = await CustomerRepository(async_session).create("Intruder")
    service = DidReleaseService(async_session, clock=clock)

    assert await service.can_release(intruder.id, available_did.id) is False
    with pytest.raises(DidNotOwned):
        await service.release(intruder.id, available_did.id)


@pytest.mark.asyncio
async def test_byon_release_is_refused(async_session, clock, prepaid_customer) -> None:
    byon = await DidRepository(async_session).create(
        "+14155550150",
        status=DidStatus.ASSIGNED,
        owner_customer_id=prepaid_customer.id,
        next_renewal_at=date(2026, 4, 1),
        is_byon=True,
    )
    service = DidReleaseService(async_session, clock=clock)

    with pytest.raises(ByonCannotRelease):
        await service.release(prepaid_customer.id, byon.id)


@pytest.mark.asyncio
async def test_unknown_did(async_session, clock, prepaid_customer) -> None:
    service = DidReleaseService(async_session, clock=clock)

    assert await service.can_release(prepaid_customer.id, 4242) is False
    with pytest.raises(DidNotFound):
        await service.release(prepaid_customer.id, 4242)
