"""Shared fixtures for DID engine tests.

The engine runs against an in-memory SQLite database via aiosqlite so the
suite needs no PostgreSQL instance.  Time is pinned with a
:class:`~did_engine.clock.FixedClock` at 2026-03-15 10:00 UTC unless a test
moves it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from did_engine.clock import FixedClock
from did_engine.state.database import enable_sqlite_savepoints
from did_engine.state.repository import CustomerRepository, DidRepository
from did_engine.state.tables import Base, BillingMode, CustomerTable, DidTable
from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

NOW = datetime(2026, 3, 15, 10, 0, 0, tzinfo=UTC)


def _patch_columns_for_sqlite() -> None:
    """Make ``DateTime(timezone=True)`` columns come back UTC-aware from SQLite."""

    class _UTCAwareDateTime(TypeDecorator):
        """SQLAlchemy TypeDecorator that ensures datetimes are always UTC-aware."""

        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def prepaid_customer(async_session) -> CustomerTable:
    """Prepaid customer holding 50.00 of balance."""
    return await CustomerRepository(async_session).create(
        "Acme Telecom",
        billing_mode=BillingMode.PREPAID,
        balance=Decimal("50.00"),
    )


@pytest_asyncio.fixture
async def postpaid_customer(async_session) -> CustomerTable:
    return await CustomerRepository(async_session).create("Globex", billing_mode=BillingMode.POSTPAID)


@pytest_asyncio.fixture
async def available_did(async_session) -> DidTable:
    """Inventory number priced 2.00 setup / 10.00 monthly."""
    return await DidRepository(async_session).create(
        "+34910000001",
        national_number="910000001",
        setup_price=Decimal("2.00"),
        monthly_price=Decimal("10.00"),
    )
