"""Tests for api/api/services/otp_client.py

Covers:
- Form fields, paths and basic auth sent to the Verify API
- Approved vs rejected verification checks
- Provider and transport errors reported with a generic message
"""

from __future__ import annotations

import base64
import logging
from urllib.parse import parse_qs

import httpx
import pytest

from api.services.otp_client import VerifyApiClient

PHONE = "+14155551234"


def _client(handler) -> VerifyApiClient:
    return VerifyApiClient(
        "https://verify.example.com/",
        account_sid="AC123",
        auth_token="secret-token",
        service_sid="VA456",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.mark.asyncio
async def test_send_posts_number_and_channel() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "VE789", "status": "pending"})

    client = _client(handler)
    result = await client.send_verification(PHONE)
    await client.close()

    assert result.success is True
    assert result.session_id == "VE789"
    [request] = seen
    assert request.url.path == "/v2/Services/VA456/Verifications"
    assert _form(request) == {"To": PHONE, "Channel": "sms"}
    expected = base64.b64encode(b"AC123:secret-token").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "approved"), [("approved", True), ("pending", False)])
async def test_check_reports_approval(status: str, approved: bool) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": status})

    client = _client(handler)
    result = await client.check_verification(PHONE, "123456")
    await client.close()

    assert result.success is True
    assert result.approved is approved
    assert seen[0].url.path == "/v2/Services/VA456/VerificationCheck"
    assert _form(seen[0]) == {"To": PHONE, "Code": "123456"}
    if not approved:
        assert result.error == "Invalid verification code"


@pytest.mark.asyncio
async def test_provider_error_message_is_logged_not_returned(caplog) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 60200, "message": "Invalid parameter: To"})

    client = _client(handler)
    with caplog.at_level(logging.WARNING, logger="api.services.otp_client"):
        result = await client.send_verification(PHONE)
    await client.close()

    assert result.success is False
    assert result.error == "Service temporarily unavailable"
    assert "Invalid parameter: To" in caplog.text


@pytest.mark.asyncio
async def test_non_json_error_falls_back_to_generic_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    client = _client(handler)
    result = await client.check_verification(PHONE, "123456")
    await client.close()

    assert result.success is False
    assert result.approved is False
    assert result.error == "Service temporarily unavailable"


@pytest.mark.asyncio
async def test_transport_error_is_reported_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    result = await client.send_verification(PHONE)
    await client.close()

    assert result.success is False
    assert result.error == "Service temporarily unavailable"
