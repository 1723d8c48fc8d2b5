"""HTTP client for a WHMCS-compatible billing gateway API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from did_engine.billing import GatewayInvoiceRequest
from did_engine.errors import GatewayApiError

logger = logging.getLogger(__name__)


class WhmcsApiClient:
    """Creates invoices through the gateway's form-encoded ``api.php``.

    Implements :class:`did_engine.billing.BillingGatewayClient`.  Every
    failure surfaces as :class:`GatewayApiError`; connection problems are
    flagged as transport errors so the sync sweep retries them.

    Parameters
    ----------
    api_url:
        Full URL of the API endpoint (e.g. ``https://billing.example.com/includes/api.php``).
    identifier, secret:
        API credential pair.
    payment_method:
        Gateway payment method assigned to new invoices.
    send_email:
        Whether the gateway e-mails the invoice to the client.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional transport override (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_url: str,
        *,
        identifier: str,
        secret: str,
        payment_method: str = "banktransfer",
        send_email: bool = True,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._identifier = identifier
        self._secret = secret
        self._payment_method = payment_method
        self._send_email = send_email
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def create_invoice(self, request: GatewayInvoiceRequest) -> str:
        """Create an unpaid invoice with a single line item."""
        logger.info(
            "Creating gateway invoice for client %d: %s (%s)",
            request.client_id,
            request.description,
            request.amount,
        )
        data = await self._request(
            "CreateInvoice",
            {
                "userid": str(request.client_id),
                "status": "Unpaid",
                "sendinvoice": "1" if self._send_email else "0",
                "paymentmethod": self._payment_method,
                "date": request.issued_on.isoformat(),
                "duedate": request.due_on.isoformat(),
                "itemdescription1": request.description,
                "itemamount1": f"{request.amount:.2f}",
                "itemtaxed1": "0",
                "notes": request.notes,
            },
        )
        if data.get("result") != "success":
            message = data.get("message") or "Unknown billing gateway error"
            logger.error("Gateway CreateInvoice failed for client %d: %s", request.client_id, message)
            raise GatewayApiError(message)

        invoice_id = data.get("invoiceid")
        if invoice_id in (None, ""):
            raise GatewayApiError("Gateway response carried no invoice id")
        return str(invoice_id)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _request(self, action: str, params: dict[str, str]) -> dict[str, Any]:
        form = {
            **params,
            "identifier": self._identifier,
            "secret": self._secret,
            "action": action,
            "responsetype": "json",
        }
        try:
            response = await self._client.post(self._api_url, data=form)
        except httpx.RequestError as exc:
            logger.error("Billing gateway transport error: %s", exc)
            raise GatewayApiError(f"Billing gateway connection error: {exc}", transport=True) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayApiError(
                f"Invalid JSON response from billing gateway (HTTP {response.status_code})"
            ) from exc
        if not isinstance(data, dict):
            raise GatewayApiError(f"Unexpected response from billing gateway (HTTP {response.status_code})")
        return data
