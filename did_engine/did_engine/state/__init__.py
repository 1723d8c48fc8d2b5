"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from did_engine.state.database import create_tables, get_engine, get_session
from did_engine.state.repository import (
    ByonVerificationRepository,
    CountryRepository,
    CustomerRepository,
    DidOrderRepository,
    DidRepository,
    InvoiceRepository,
    LedgerMovementRepository,
)

__all__ = [
    "ByonVerificationRepository",
    "CountryRepository",
    "CustomerRepository",
    "DidOrderRepository",
    "DidRepository",
    "InvoiceRepository",
    "LedgerMovementRepository",
    "create_tables",
    "get_engine",
    "get_session",
]
