"""Voluntary DID release by the owning customer.

Releasing stops future renewals.  Nothing is refunded for the current
period; the number goes straight back to ``available`` inventory with its
prices intact.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock
from did_engine.errors import ByonCannotRelease, DidNotAssigned, DidNotFound, DidNotOwned
from did_engine.inventory import InventoryStateMachine
from did_engine.state.repository import DidRepository
from did_engine.state.tables import DidStatus, DidTable

logger = logging.getLogger(__name__)


class DidReleaseService:
    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._dids = DidRepository(session)
        self._inventory = InventoryStateMachine(session, clock=clock)

    async def _check(self, customer_id: int, did_id: int) -> DidTable:
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if did.owner_customer_id != customer_id:
            raise DidNotOwned(f"DID {did.e164} does not belong to customer {customer_id}", details={"did_id": did_id})
        if did.is_byon:
            raise ByonCannotRelease(
                f"DID {did.e164} is a BYON number and can only be released by an administrator",
                details={"did_id": did_id},
            )
        if did.status != DidStatus.ASSIGNED:
            raise DidNotAssigned(f"DID {did.e164} is not assigned", details={"did_id": did_id, "status": did.status})
        return did

    async def can_release(self, customer_id: int, did_id: int) -> bool:
        try:
            await self._check(customer_id, did_id)
        except (DidNotFound, DidNotOwned, ByonCannotRelease, DidNotAssigned):
            return False
        return True

    async def release(self, customer_id: int, did_id: int) -> DidTable:
        """Return an owned DID to inventory."""
        did = await self._check(customer_id, did_id)
        released = await self._inventory.release(did.id, owner_customer_id=customer_id)
        logger.info("DID %s released by customer %s", released.e164, customer_id)
        return released
