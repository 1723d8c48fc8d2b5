"""Tests for api/api/services/billing_gateway.py

Covers:
- CreateInvoice form fields and credentials
- Gateway rejections and malformed responses raised as GatewayApiError
- Transport errors flagged as retryable
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from did_engine.billing import GatewayInvoiceRequest
from did_engine.errors import GatewayApiError

from api.services.billing_gateway import WhmcsApiClient

API_URL = "https://billing.example.com/includes/api.php"

REQUEST = GatewayInvoiceRequest(
    client_id=77,
    description="Balance top-up - Acme Telecom",
    amount=Decimal("25.5"),
    issued_on=date(2026, 3, 15),
    due_on=date(2026, 4, 14),
    notes="Provider:12",
)


def _client(handler) -> WhmcsApiClient:
    return WhmcsApiClient(
        API_URL,
        identifier="api-id",
        secret="api-secret",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.mark.asyncio
async def test_create_invoice_posts_line_item() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": "success", "invoiceid": 9001})

    client = _client(handler)
    external_id = await client.create_invoice(REQUEST)
    await client.close()

    assert external_id == "9001"
    [request] = seen
    assert str(request.url) == API_URL
    form = _form(request)
    assert form["action"] == "CreateInvoice"
    assert form["identifier"] == "api-id"
    assert form["secret"] == "api-secret"
    assert form["responsetype"] == "json"
    assert form["userid"] == "77"
    assert form["status"] == "Unpaid"
    assert form["itemdescription1"] == "Balance top-up - Acme Telecom"
    assert form["itemamount1"] == "25.50"
    assert form["date"] == "2026-03-15"
    assert form["duedate"] == "2026-04-14"
    assert form["notes"] == "Provider:12"
    assert form["paymentmethod"] == "banktransfer"
    assert form["sendinvoice"] == "1"


@pytest.mark.asyncio
async def test_rejection_is_raised_with_gateway_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": "error", "message": "Client ID Not Found"})

    client = _client(handler)
    with pytest.raises(GatewayApiError) as exc_info:
        await client.create_invoice(REQUEST)
    await client.close()

    assert exc_info.value.message == "Client ID Not Found"
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_non_json_response_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    client = _client(handler)
    with pytest.raises(GatewayApiError) as exc_info:
        await client.create_invoice(REQUEST)
    await client.close()

    assert "HTTP 502" in exc_info.value.message
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_missing_invoice_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": "success"})

    client = _client(handler)
    with pytest.raises(GatewayApiError, match="no invoice id"):
        await client.create_invoice(REQUEST)
    await client.close()


@pytest.mark.asyncio
async def test_transport_error_is_flagged() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(GatewayApiError) as exc_info:
        await client.create_invoice(REQUEST)
    await client.close()

    assert exc_info.value.transport is True
    assert exc_info.value.retryable is True
