"""Balance-first billing: purchase, renewal, release, top-ups and invoice sync."""

from did_engine.billing.purchase import DidPurchaseService, PurchaseResult
from did_engine.billing.release import DidReleaseService
from did_engine.billing.renewal import DidRenewalService, RenewalStats
from did_engine.billing.sync import BillingGatewayClient, GatewayInvoiceRequest, InvoiceSyncService, SyncStats
from did_engine.billing.topup import BalanceTopupService

__all__ = [
    "BalanceTopupService",
    "BillingGatewayClient",
    "DidPurchaseService",
    "DidReleaseService",
    "DidRenewalService",
    "GatewayInvoiceRequest",
    "InvoiceSyncService",
    "PurchaseResult",
    "RenewalStats",
    "SyncStats",
]
