"""HTTP client for a Twilio-Verify-compatible SMS verification service."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from did_engine.byon import OtpCheckResult, OtpSendResult, mask_phone

logger = logging.getLogger(__name__)

_UNAVAILABLE = "Service temporarily unavailable"


class VerifyApiClient:
    """Thin async wrapper around the Verify v2 REST API.

    Implements :class:`did_engine.byon.OtpProvider`.  Provider and
    transport failures are logged and reported in the result as a generic
    "unavailable" error; they are never raised.

    Parameters
    ----------
    base_url:
        Root URL of the Verify API (e.g. ``https://verify.twilio.com``).
    account_sid, auth_token:
        HTTP basic-auth credentials.
    service_sid:
        Verify service the codes are issued under.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional transport override (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        account_sid: str,
        auth_token: str,
        service_sid: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._service_sid = service_sid
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            auth=httpx.BasicAuth(account_sid, auth_token),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def send_verification(self, e164: str) -> OtpSendResult:
        """Ask the provider to text a code to *e164*."""
        path = f"/v2/Services/{self._service_sid}/Verifications"
        ok, data = await self._post(path, {"To": e164, "Channel": "sms"}, e164)
        if not ok:
            return OtpSendResult(success=False, error=_UNAVAILABLE)
        logger.info("Verification sent to %s (status %s)", mask_phone(e164), data.get("status", "unknown"))
        return OtpSendResult(success=True, session_id=data.get("sid"))

    async def check_verification(self, e164: str, code: str) -> OtpCheckResult:
        """Ask the provider whether *code* is the one sent to *e164*."""
        path = f"/v2/Services/{self._service_sid}/VerificationCheck"
        ok, data = await self._post(path, {"To": e164, "Code": code}, e164)
        if not ok:
            return OtpCheckResult(success=False, approved=False, error=_UNAVAILABLE)
        approved = data.get("status") == "approved"
        return OtpCheckResult(
            success=True,
            approved=approved,
            error=None if approved else "Invalid verification code",
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _post(self, path: str, form: dict[str, str], e164: str) -> tuple[bool, dict[str, Any]]:
        """POST form data; return ``(ok, body)``.  ``body`` is ``{}`` on transport errors."""
        try:
            response = await self._client.post(path, data=form)
        except httpx.RequestError as exc:
            logger.error("Verify request to %s for %s failed: %s", path, mask_phone(e164), exc)
            return False, {}

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success:
            return True, data
        logger.warning(
            "Verify API returned %d for %s (%s): %s",
            response.status_code,
            path,
            mask_phone(e164),
            data.get("message", response.text[:200]),
        )
        return False, data
