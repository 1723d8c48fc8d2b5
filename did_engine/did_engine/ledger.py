"""Balance ledger client.

The billing orchestrator talks to the customer balance only through
:class:`BalanceLedgerClient`.  :class:`SqlBalanceLedger` is the default
implementation on top of the ``customers`` and ``ledger_movements``
tables; the debit is a guarded UPDATE so a concurrent charge that empties
the balance between "check" and "debit" shows up as a failed debit rather
than a negative balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock
from did_engine.errors import CustomerNotFound
from did_engine.proration import money
from did_engine.state.repository import CustomerRepository, LedgerMovementRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    error: str | None = None
    balance_after: Decimal | None = None


class BalanceLedgerClient(Protocol):
    """Narrow interface over the customer balance."""

    async def get_balance(self, tenant_id: str, customer_id: int) -> Decimal: ...

    async def decrement_balance(self, customer_id: int, amount: Decimal) -> LedgerResult: ...

    async def increment_balance(self, customer_id: int, amount: Decimal) -> LedgerResult: ...

    async def record_movement(
        self, customer_id: int, amount: Decimal, balance_after: Decimal, concept: str
    ) -> None: ...


class SqlBalanceLedger:
    """:class:`BalanceLedgerClient` backed by the state store.

    Parameters
    ----------
    session:
        Active async session; writes join the caller's transaction.
    clock:
        Time source for movement timestamps.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._customers = CustomerRepository(session)
        self._movements = LedgerMovementRepository(session)
        self._clock = clock or SystemClock()

    async def get_balance(self, tenant_id: str, customer_id: int) -> Decimal:
        customer = await self._customers.get(customer_id)
        if customer is None or customer.tenant_id != tenant_id:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})
        return money(customer.balance)

    async def decrement_balance(self, customer_id: int, amount: Decimal) -> LedgerResult:
        amount = money(amount)
        if amount < 0:
            return LedgerResult(success=False, error="Debit amount must not be negative")
        debited = await self._customers.debit(customer_id, amount)
        if not debited:
            logger.warning("Balance debit of %s failed for customer %s", amount, customer_id)
            return LedgerResult(success=False, error="Balance no longer covers the amount")
        customer = await self._customers.get(customer_id)
        balance_after = money(customer.balance) if customer is not None else None
        return LedgerResult(success=True, balance_after=balance_after)

    async def increment_balance(self, customer_id: int, amount: Decimal) -> LedgerResult:
        amount = money(amount)
        if amount <= 0:
            return LedgerResult(success=False, error="Credit amount must be positive")
        credited = await self._customers.credit(customer_id, amount)
        if not credited:
            return LedgerResult(success=False, error=f"Customer {customer_id} not found")
        customer = await self._customers.get(customer_id)
        balance_after = money(customer.balance) if customer is not None else None
        return LedgerResult(success=True, balance_after=balance_after)

    async def record_movement(self, customer_id: int, amount: Decimal, balance_after: Decimal, concept: str) -> None:
        created_at: datetime = self._clock.now()
        await self._movements.append(
            customer_id,
            money(amount),
            money(balance_after),
            concept,
            created_at=created_at,
        )
        logger.info("Ledger movement customer=%s amount=%s balance_after=%s", customer_id, amount, balance_after)
