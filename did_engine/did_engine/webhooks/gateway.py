"""Authenticated, idempotent entry point for billing-gateway events.

The gateway sends two events, ``paid`` and ``overdue``.  Each carries a
JSON body whose ``notes`` field embeds our invoice id as
``Provider:<id>``.  Processing is:

1. authenticate the raw body (:func:`verify_webhook`);
2. parse the JSON object and resolve the invoice;
3. short-circuit if the event was already applied;
4. dispatch to the handler registered for the invoice type.

Step 3 is a guarded ``UPDATE ... WHERE paid_at IS NULL`` for ``paid``, so
two concurrent deliveries of the same event apply its side effects once.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock
from did_engine.errors import InvoiceNotFound, WebhookAuthenticationError, WebhookPayloadError
from did_engine.ledger import BalanceLedgerClient
from did_engine.state.repository import InvoiceRepository
from did_engine.state.tables import InvoiceTable, PaidVia
from did_engine.webhooks.handlers import InvoiceHandler, overdue_handlers, paid_handlers
from did_engine.webhooks.signature import DEFAULT_TOLERANCE_SECONDS, verify_webhook

logger = logging.getLogger(__name__)

PROVIDER_REF = re.compile(r"Provider:(\d+)")


class WebhookGateway:
    """Apply gateway events to invoices and the resources they pay for.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    secret:
        Shared HMAC secret.  Empty means every request is refused.
    clock:
        Time source for the replay window and ``paid_at``.
    ledger:
        Balance client handed to the top-up handler.
    tolerance_seconds:
        Replay window for ``X-Webhook-Timestamp``.
    paid, overdue:
        Handler registries keyed by invoice type.  Default to
        :func:`paid_handlers` and :func:`overdue_handlers`.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        secret: str,
        clock: Clock | None = None,
        ledger: BalanceLedgerClient | None = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        paid: dict[str, InvoiceHandler] | None = None,
        overdue: dict[str, InvoiceHandler] | None = None,
    ) -> None:
        self._secret = secret
        self._clock = clock or SystemClock()
        self._tolerance = tolerance_seconds
        self._invoices = InvoiceRepository(session)
        self._paid = paid if paid is not None else paid_handlers(session, ledger=ledger, clock=self._clock)
        self._overdue = overdue if overdue is not None else overdue_handlers(session, clock=self._clock)

    # -- Request validation -------------------------------------------------

    def authenticate(self, body: bytes, signature: str | None, timestamp: str | None) -> None:
        try:
            verify_webhook(
                body,
                signature,
                timestamp,
                self._secret,
                now=self._clock.now(),
                tolerance_seconds=self._tolerance,
            )
        except WebhookAuthenticationError as exc:
            logger.warning("Billing webhook rejected: %s", exc.message)
            raise

    @staticmethod
    def parse_payload(body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookPayloadError("Request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Request body must be a JSON object")
        return payload

    @staticmethod
    def extract_invoice_id(payload: dict[str, Any]) -> int:
        """Our invoice id from the ``Provider:<id>`` marker in ``notes``."""
        notes = payload.get("notes")
        match = PROVIDER_REF.search(notes) if isinstance(notes, str) else None
        if match is None:
            raise WebhookPayloadError("Invoice reference not found in notes")
        return int(match.group(1))

    async def _resolve(
        self,
        body: bytes,
        signature: str | None,
        timestamp: str | None,
    ) -> tuple[dict[str, Any], InvoiceTable]:
        self.authenticate(body, signature, timestamp)
        payload = self.parse_payload(body)
        invoice_id = self.extract_invoice_id(payload)
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found", details={"invoice_id": invoice_id})
        return payload, invoice

    # -- Events ---------------------------------------------------------------

    async def process_paid(self, body: bytes, signature: str | None, timestamp: str | None) -> dict[str, Any]:
        payload, invoice = await self._resolve(body, signature, timestamp)

        external_id = payload.get("invoiceid")
        recorded = await self._invoices.mark_paid_if_unpaid(
            invoice.id,
            paid_via=PaidVia.WHMCS,
            paid_at=self._clock.now(),
            external_invoice_id=str(external_id) if external_id not in (None, "") else None,
        )
        invoice = await self._invoices.get(invoice.id)
        assert invoice is not None
        if not recorded:
            logger.info("Paid webhook for invoice %s already processed", invoice.id)
            return {
                "status": "already_processed",
                "invoice_id": invoice.id,
                "invoice_type": invoice.invoice_type,
                "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
            }

        handler = self._paid.get(invoice.invoice_type)
        if handler is None:
            logger.info("No paid handler for invoice type %s (invoice %s)", invoice.invoice_type, invoice.id)
            result: dict[str, Any] = {"action": "no_handler"}
        else:
            result = await handler.handle(invoice)

        return {
            "status": "ok",
            "invoice_id": invoice.id,
            "invoice_type": invoice.invoice_type,
            **result,
        }

    async def process_overdue(self, body: bytes, signature: str | None, timestamp: str | None) -> dict[str, Any]:
        _, invoice = await self._resolve(body, signature, timestamp)

        if invoice.paid_at is not None:
            logger.info("Overdue webhook for invoice %s ignored: already paid", invoice.id)
            return {
                "status": "already_paid",
                "invoice_id": invoice.id,
                "invoice_type": invoice.invoice_type,
                "paid_at": invoice.paid_at.isoformat(),
            }

        handler = self._overdue.get(invoice.invoice_type)
        if handler is None:
            logger.info("No overdue handler for invoice type %s (invoice %s)", invoice.invoice_type, invoice.id)
            result: dict[str, Any] = {"action": "no_handler"}
        else:
            result = await handler.handle(invoice)

        return {
            "status": "ok",
            "invoice_id": invoice.id,
            "invoice_type": invoice.invoice_type,
            **result,
        }
