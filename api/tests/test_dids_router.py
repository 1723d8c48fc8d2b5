"""Tests for the customer DID endpoints (purchase and release)."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from did_engine.ledger import SqlBalanceLedger
from did_engine.state.repository import CustomerRepository, DidRepository, InvoiceRepository
from did_engine.state.tables import DidStatus


def _as(customer_id: int) -> dict[str, str]:
    return {"X-Customer-ID": str(customer_id)}


class TestPurchase:
    @pytest.mark.asyncio
    async def test_preview(self, client, seed) -> None:
        resp = await client.get(f"/api/v1/dids/{seed['did']}/purchase-preview", headers=_as(seed["prepaid"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["total_due_now"] == "7.48"
        assert data["can_purchase"] is True
        assert data["breakdown"][1]["description"] == "Monthly fee (prorated: 17 of 31 days)"

    @pytest.mark.asyncio
    async def test_purchase_commits(self, client, seed, session_factory) -> None:
        resp = await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == DidStatus.ASSIGNED
        assert data["amount_charged"] == "7.48"
        assert data["balance_after"] == "42.52"
        assert data["next_renewal_date"] == "2026-04-01"

        async with session_factory() as session:
            customer = await CustomerRepository(session).get(seed["prepaid"])
            assert customer.balance == Decimal("42.52")
            did = await DidRepository(session).get(seed["did"])
            assert did.owner_customer_id == seed["prepaid"]

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_402(self, client, seed, session_factory) -> None:
        async with session_factory() as session:
            poor = await CustomerRepository(session).create("Poor Co", balance=Decimal("1.00"))
            await session.commit()

        resp = await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(poor.id))

        assert resp.status_code == 402
        body = resp.json()
        assert body["code"] == "INSUFFICIENT_BALANCE"
        assert body["required"] == "7.48"
        assert body["available"] == "1.00"

        async with session_factory() as session:
            assert await InvoiceRepository(session).list_for_customer(poor.id) == []

    @pytest.mark.asyncio
    async def test_taken_did_is_409(self, client, seed) -> None:
        await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        resp = await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        assert resp.status_code == 409
        assert resp.json()["code"] == "DID_NOT_AVAILABLE"

    @pytest.mark.asyncio
    async def test_did_taken_after_debit_is_409(self, client, seed, session_factory, monkeypatch) -> None:
        debit = SqlBalanceLedger.decrement_balance

        async def _debit_then_lose_race(self, customer_id, amount):
            result = await debit(self, customer_id, amount)
            await DidRepository(self._customers._session).compare_and_set(
                seed["did"],
                {"status": DidStatus.AVAILABLE},
                {
                    "status": DidStatus.ASSIGNED,
                    "owner_customer_id": seed["postpaid"],
                    "next_renewal_at": date(2026, 4, 1),
                },
            )
            return result

        monkeypatch.setattr(SqlBalanceLedger, "decrement_balance", _debit_then_lose_race)

        resp = await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "ASSIGNMENT_AFTER_DEBIT_FAILED"
        assert body["did_id"] == seed["did"]
        assert body["cause"] == "STATE_CONFLICT"

        async with session_factory() as session:
            customer = await CustomerRepository(session).get(seed["prepaid"])
            assert customer.balance == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_unknown_did_is_404(self, client, seed) -> None:
        resp = await client.post("/api/v1/dids/999/purchase", headers=_as(seed["prepaid"]))

        assert resp.status_code == 404
        assert resp.json()["code"] == "DID_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_missing_customer_header_is_401(self, client, seed) -> None:
        resp = await client.post(f"/api/v1/dids/{seed['did']}/purchase")

        assert resp.status_code == 401


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_owned_did(self, client, seed) -> None:
        await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        check = await client.get(f"/api/v1/dids/{seed['did']}/can-release", headers=_as(seed["prepaid"]))
        assert check.json() == {"did_id": seed["did"], "can_release": True}

        resp = await client.post(f"/api/v1/dids/{seed['did']}/release", headers=_as(seed["prepaid"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["released"] is True
        assert data["did"]["status"] == DidStatus.AVAILABLE
        assert data["did"]["owner_customer_id"] is None
        assert data["did"]["monthly_price"] == "10.00"

    @pytest.mark.asyncio
    async def test_release_of_foreign_did_is_403(self, client, seed) -> None:
        await client.post(f"/api/v1/dids/{seed['did']}/purchase", headers=_as(seed["prepaid"]))

        resp = await client.post(f"/api/v1/dids/{seed['did']}/release", headers=_as(seed["postpaid"]))

        assert resp.status_code == 403
        assert resp.json()["code"] == "DID_NOT_OWNED"
