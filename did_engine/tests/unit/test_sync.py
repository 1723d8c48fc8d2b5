"""Unit tests for pushing pending invoices to the billing gateway."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from did_engine.billing import BalanceTopupService, DidPurchaseService, InvoiceSyncService
from did_engine.billing.sync import MAX_SYNC_ATTEMPTS, SyncOutcome, backoff_delay
from did_engine.errors import GatewayApiError
from did_engine.state.repository import CustomerRepository, InvoiceRepository
from did_engine.state.tables import InvoiceType, PaidVia, SyncStatus


class _FakeGateway:
    """Records requests; fails with the queued errors before succeeding."""

    def __init__(self, *errors: GatewayApiError) -> None:
        self.requests = []
        self._errors = list(errors)

    async def create_invoice(self, request) -> str:
        self.requests.append(request)
        if self._errors:
            raise self._errors.pop(0)
        return str(5000 + len(self.requests))


@pytest_asyncio.fixture
async def linked_customer(async_session):
    return await CustomerRepository(async_session).create(
        "Acme Telecom", balance=Decimal("50.00"), gateway_client_id=77
    )


@pytest_asyncio.fixture
async def topup_invoice(async_session, clock, linked_customer):
    return await BalanceTopupService(async_session, clock=clock).create_topup_invoice(linked_customer.id, "25.00")


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_creates_gateway_invoice(async_session, clock, linked_customer, topup_invoice) -> None:
    gateway = _FakeGateway()

    stats = await InvoiceSyncService(async_session, client=gateway, clock=clock).run()

    assert stats.invoices_checked == 1
    assert stats.synced == 1
    [request] = gateway.requests
    assert request.client_id == 77
    assert request.amount == Decimal("25.00")
    assert request.description == "Balance top-up - Acme Telecom"
    assert request.notes == f"Provider:{topup_invoice.id}"
    assert request.issued_on == date(2026, 3, 15)
    assert request.due_on == date(2026, 4, 14)

    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.SYNCED
    assert invoice.external_invoice_id == "5001"
    assert invoice.synced_at == clock.now()
    assert invoice.paid_at is None


@pytest.mark.asyncio
async def test_synced_invoices_are_not_sent_again(async_session, clock, linked_customer, topup_invoice) -> None:
    gateway = _FakeGateway()
    service = InvoiceSyncService(async_session, client=gateway, clock=clock)
    await service.run()

    again = await service.run()

    assert again.invoices_checked == 0
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_balance_paid_invoices_are_never_synced(async_session, clock, linked_customer, available_did) -> None:
    purchase = await DidPurchaseService(async_session, clock=clock).purchase(linked_customer.id, available_did.id)
    gateway = _FakeGateway()

    stats = await InvoiceSyncService(async_session, client=gateway, clock=clock).run()

    assert stats.invoices_checked == 0
    assert gateway.requests == []
    invoice = await InvoiceRepository(async_session).get(purchase.invoice.id)
    assert invoice.paid_via == PaidVia.BALANCE
    assert invoice.sync_status == SyncStatus.NOT_APPLICABLE


@pytest.mark.asyncio
async def test_customer_without_gateway_account(async_session, clock, prepaid_customer) -> None:
    invoice = await BalanceTopupService(async_session, clock=clock).create_topup_invoice(prepaid_customer.id, "10")
    gateway = _FakeGateway()

    stats = await InvoiceSyncService(async_session, client=gateway, clock=clock).run()

    assert stats.not_applicable == 1
    assert gateway.requests == []
    assert (await InvoiceRepository(async_session).get(invoice.id)).sync_status == SyncStatus.NOT_APPLICABLE


@pytest.mark.asyncio
async def test_renewal_description_names_the_did(async_session, clock, linked_customer) -> None:
    await InvoiceRepository(async_session).create(
        customer_id=linked_customer.id,
        invoice_number="DID-REN-1",
        invoice_type=InvoiceType.DID_RENEWAL,
        amount=Decimal("10.00"),
        total_amount=Decimal("10.00"),
        ddi_e164="+34910000001",
        sync_status=SyncStatus.PENDING,
    )
    gateway = _FakeGateway()

    await InvoiceSyncService(async_session, client=gateway, clock=clock).run()

    assert gateway.requests[0].description == "DID monthly rental - +34910000001"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retryable_failure_waits_for_backoff(async_session, clock, linked_customer, topup_invoice) -> None:
    gateway = _FakeGateway(GatewayApiError("connection reset", transport=True))
    service = InvoiceSyncService(async_session, client=gateway, clock=clock)

    first = await service.run()

    assert first.retrying == 1
    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.PENDING
    assert invoice.sync_attempts == 1
    assert invoice.sync_error == "connection reset"
    assert invoice.sync_attempted_at == clock.now()

    clock.advance(timedelta(seconds=10))
    waiting = await service.run()
    assert waiting.waiting == 1
    assert len(gateway.requests) == 1

    clock.advance(timedelta(seconds=20))
    retried = await service.run()
    assert retried.synced == 1
    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.SYNCED
    assert invoice.sync_error is None
    assert invoice.sync_attempts == 1


@pytest.mark.asyncio
async def test_fifth_failure_marks_invoice_failed(async_session, clock, linked_customer, topup_invoice) -> None:
    errors = [GatewayApiError("gateway timeout", transport=True) for _ in range(MAX_SYNC_ATTEMPTS)]
    gateway = _FakeGateway(*errors)
    service = InvoiceSyncService(async_session, client=gateway, clock=clock)

    outcomes = []
    for attempt in range(1, MAX_SYNC_ATTEMPTS + 1):
        stats = await service.run()
        outcomes.append(stats.results[0].outcome)
        clock.advance(backoff_delay(attempt))

    assert outcomes == [SyncOutcome.RETRY] * (MAX_SYNC_ATTEMPTS - 1) + [SyncOutcome.FAILED]
    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.FAILED
    assert invoice.sync_attempts == MAX_SYNC_ATTEMPTS
    assert (await service.run()).invoices_checked == 0


@pytest.mark.asyncio
async def test_permanent_error_fails_immediately(async_session, clock, linked_customer, topup_invoice) -> None:
    gateway = _FakeGateway(GatewayApiError("Client ID Not Found"))

    stats = await InvoiceSyncService(async_session, client=gateway, clock=clock).run()

    assert stats.failed == 1
    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.FAILED
    assert invoice.sync_attempts == 1
    assert invoice.sync_error == "Client ID Not Found"


@pytest.mark.asyncio
async def test_unexpected_error_is_counted_and_rolled_back(
    async_session, clock, linked_customer, topup_invoice
) -> None:
    class _Broken:
        async def create_invoice(self, request) -> str:
            raise RuntimeError("bug")

    stats = await InvoiceSyncService(async_session, client=_Broken(), clock=clock).run()

    assert stats.errors == 1
    invoice = await InvoiceRepository(async_session).get(topup_invoice.id)
    assert invoice.sync_status == SyncStatus.PENDING
    assert invoice.sync_attempts == 0


@pytest.mark.asyncio
async def test_dry_run_contacts_nobody(async_session, clock, linked_customer, topup_invoice) -> None:
    gateway = _FakeGateway()

    stats = await InvoiceSyncService(async_session, client=gateway, clock=clock).run(dry_run=True)

    assert stats.dry_run is True
    assert stats.results[0].outcome == SyncOutcome.DRY_RUN
    assert gateway.requests == []
    assert (await InvoiceRepository(async_session).get(topup_invoice.id)).sync_status == SyncStatus.PENDING


class TestGatewayApiError:
    @pytest.mark.parametrize(
        ("error", "retryable"),
        [
            (GatewayApiError("anything", transport=True), True),
            (GatewayApiError("Invalid client id"), False),
            (GatewayApiError("Authentication Failed"), False),
            (GatewayApiError("Invalid JSON response from billing gateway (HTTP 502)"), True),
        ],
    )
    def test_retryable(self, error: GatewayApiError, retryable: bool) -> None:
        assert error.retryable is retryable

    def test_backoff_schedule(self) -> None:
        assert [backoff_delay(n).total_seconds() for n in range(0, 7)] == [0, 30, 60, 300, 900, 3600, 3600]
