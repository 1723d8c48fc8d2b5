"""DID lifecycle state machine.

Legal transitions::

    available --reserve--> reserved --assign--> assigned
        |                     |                    |
        +------assign---------+--release--> available <--release--+

plus two transitions open to BYON numbers only: ``assigned → disabled``
(administrator release) and ``disabled → assigned`` (re-verification).

Every transition re-reads the row immediately before writing and then
issues an UPDATE whose WHERE clause repeats the precondition.  If another
request got there first the UPDATE touches zero rows and the caller gets
:class:`~did_engine.errors.StateConflict`; two customers can therefore
never both win the same ``available`` number.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.clock import Clock, SystemClock, add_months
from did_engine.errors import DidNotFound, InvalidStateTransition, StateConflict
from did_engine.state.repository import DidRepository
from did_engine.state.tables import DidStatus, DidTable

logger = logging.getLogger(__name__)

RESERVATION_HOURS = 24

_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        (DidStatus.AVAILABLE, DidStatus.RESERVED),
        (DidStatus.AVAILABLE, DidStatus.ASSIGNED),
        (DidStatus.RESERVED, DidStatus.ASSIGNED),
        (DidStatus.RESERVED, DidStatus.AVAILABLE),
        (DidStatus.ASSIGNED, DidStatus.AVAILABLE),
    }
)

_BYON_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        (DidStatus.ASSIGNED, DidStatus.DISABLED),
        (DidStatus.DISABLED, DidStatus.ASSIGNED),
    }
)

_CLEAR_RESERVATION: dict[str, Any] = {"reserved_for_customer_id": None, "reserved_until": None}
_CLEAR_OWNERSHIP: dict[str, Any] = {"owner_customer_id": None, "assigned_at": None, "next_renewal_at": None}


def is_legal_transition(from_status: str, to_status: str, *, is_byon: bool = False) -> bool:
    """Whether ``from_status → to_status`` is part of the lifecycle graph."""
    if (from_status, to_status) in _TRANSITIONS:
        return True
    return is_byon and (from_status, to_status) in _BYON_TRANSITIONS


class InventoryStateMachine:
    """The only writer of DID status and ownership.

    Parameters
    ----------
    session:
        Active async session; the caller owns the transaction.
    clock:
        Time source for ``assigned_at`` and reservation expiry.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._dids = DidRepository(session)
        self._clock = clock or SystemClock()

    # -- Core ---------------------------------------------------------------

    async def _transition(
        self,
        did_id: int,
        from_status: str,
        to_status: str,
        values: dict[str, Any],
        *,
        guard: dict[str, Any] | None = None,
        byon: bool = False,
    ) -> DidTable:
        """Re-read, validate and compare-and-set one DID.

        *guard* adds column equality preconditions on top of the source
        status; they are checked against the fresh read and repeated in
        the UPDATE's WHERE clause.
        """
        if not is_legal_transition(from_status, to_status, is_byon=byon):
            raise InvalidStateTransition(from_status, to_status)

        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})

        expected: dict[str, Any] = {"status": from_status, **(guard or {})}
        for column, value in expected.items():
            current = getattr(did, column)
            if current != value:
                raise StateConflict(
                    f"DID {did.e164} no longer satisfies {column}={value!r} (found {current!r})",
                    details={"did_id": did_id, "field": column, "expected": value, "actual": current},
                )

        changed = await self._dids.compare_and_set(did_id, expected, {"status": to_status, **values})
        if not changed:
            raise StateConflict(
                f"DID {did.e164} changed concurrently during {from_status} -> {to_status}",
                details={"did_id": did_id},
            )

        refreshed = await self._dids.get(did_id)
        assert refreshed is not None
        logger.info("DID %s: %s -> %s", refreshed.e164, from_status, to_status)
        return refreshed

    # -- Transitions ------------------------------------------------------

    async def reserve(self, did_id: int, customer_id: int, *, hours: int = RESERVATION_HOURS) -> DidTable:
        """``available → reserved`` for *customer_id* until now + *hours*."""
        return await self._transition(
            did_id,
            DidStatus.AVAILABLE,
            DidStatus.RESERVED,
            {
                "reserved_for_customer_id": customer_id,
                "reserved_until": self._clock.now() + timedelta(hours=hours),
            },
            guard={"owner_customer_id": None},
        )

    async def assign(self, did_id: int, customer_id: int, next_renewal_at: date) -> DidTable:
        """``available → assigned`` (immediate purchase)."""
        return await self._transition(
            did_id,
            DidStatus.AVAILABLE,
            DidStatus.ASSIGNED,
            {
                "owner_customer_id": customer_id,
                "assigned_at": self._clock.now(),
                "next_renewal_at": next_renewal_at,
                **_CLEAR_RESERVATION,
            },
            guard={"owner_customer_id": None},
        )

    async def assign_reserved(self, did_id: int, customer_id: int, next_renewal_at: date) -> DidTable:
        """``reserved → assigned`` for the customer holding the reservation."""
        return await self._transition(
            did_id,
            DidStatus.RESERVED,
            DidStatus.ASSIGNED,
            {
                "owner_customer_id": customer_id,
                "assigned_at": self._clock.now(),
                "next_renewal_at": next_renewal_at,
                **_CLEAR_RESERVATION,
            },
            guard={"reserved_for_customer_id": customer_id},
        )

    async def release_reservation(self, did_id: int) -> DidTable:
        """``reserved → available``; clears the reservation fields."""
        return await self._transition(did_id, DidStatus.RESERVED, DidStatus.AVAILABLE, dict(_CLEAR_RESERVATION))

    async def release(self, did_id: int, *, owner_customer_id: int | None = None) -> DidTable:
        """``assigned → available`` in place, keeping prices.

        When *owner_customer_id* is given the release only applies if that
        customer still owns the number.
        """
        did = await self._dids.get(did_id)
        guard: dict[str, Any] = {"is_byon": False}
        if owner_customer_id is not None:
            guard["owner_customer_id"] = owner_customer_id
        if did is not None and did.is_byon:
            raise InvalidStateTransition(DidStatus.ASSIGNED, DidStatus.AVAILABLE)
        return await self._transition(
            did_id,
            DidStatus.ASSIGNED,
            DidStatus.AVAILABLE,
            {**_CLEAR_OWNERSHIP, **_CLEAR_RESERVATION},
            guard=guard,
        )

    async def advance_renewal(self, did_id: int, *, months: int = 1) -> DidTable:
        """Move the renewal cursor of an assigned DID forward by *months*.

        The current cursor is part of the guard, so two concurrent
        advances of the same DID cannot both apply.
        """
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if did.status != DidStatus.ASSIGNED or did.next_renewal_at is None:
            raise StateConflict(
                f"DID {did.e164} is not assigned, cannot advance renewal",
                details={"did_id": did_id, "status": did.status},
            )
        current = did.next_renewal_at
        new_date = add_months(current, months)
        changed = await self._dids.compare_and_set(
            did_id,
            {"status": DidStatus.ASSIGNED, "next_renewal_at": current},
            {"next_renewal_at": new_date},
        )
        if not changed:
            raise StateConflict(f"DID {did.e164} renewal cursor moved concurrently", details={"did_id": did_id})
        logger.info("DID %s renewal advanced %s -> %s", did.e164, current, new_date)
        refreshed = await self._dids.get(did_id)
        assert refreshed is not None
        return refreshed

    async def ensure_assigned_to(self, did_id: int, customer_id: int, next_renewal_at: date) -> tuple[DidTable, bool]:
        """Make sure *customer_id* holds the DID.

        Returns the DID and whether a transition was applied.  Raises
        :class:`StateConflict` if someone else owns it or it is reserved
        for someone else.
        """
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})

        if did.status == DidStatus.ASSIGNED:
            if did.owner_customer_id != customer_id:
                raise StateConflict(
                    f"DID {did.e164} is assigned to another customer",
                    details={"did_id": did_id},
                )
            return did, False
        if did.status == DidStatus.RESERVED:
            return await self.assign_reserved(did_id, customer_id, next_renewal_at), True
        if did.status == DidStatus.AVAILABLE:
            return await self.assign(did_id, customer_id, next_renewal_at), True
        raise InvalidStateTransition(did.status, DidStatus.ASSIGNED)

    # -- BYON ---------------------------------------------------------------

    async def create_byon_did(
        self,
        *,
        e164: str,
        national_number: str,
        customer_id: int,
        verification_id: int,
        country_id: int | None,
        next_renewal_at: date,
    ) -> DidTable:
        """Insert a customer-verified number directly in ``assigned`` state."""
        did = await self._dids.create(
            e164,
            national_number=national_number,
            setup_price=Decimal("0.00"),
            monthly_price=Decimal("0.00"),
            country_id=country_id,
            status=DidStatus.ASSIGNED,
            owner_customer_id=customer_id,
            assigned_at=self._clock.now(),
            next_renewal_at=next_renewal_at,
            is_byon=True,
            byon_verification_id=verification_id,
            description=f"BYON: {e164}",
        )
        logger.info("BYON DID %s created for customer %s", did.id, customer_id)
        return did

    async def reactivate_byon(
        self, did_id: int, customer_id: int, verification_id: int, next_renewal_at: date
    ) -> DidTable:
        """``disabled → assigned`` for a previously released BYON number."""
        return await self._transition(
            did_id,
            DidStatus.DISABLED,
            DidStatus.ASSIGNED,
            {
                "owner_customer_id": customer_id,
                "assigned_at": self._clock.now(),
                "next_renewal_at": next_renewal_at,
                "byon_verification_id": verification_id,
            },
            guard={"is_byon": True, "owner_customer_id": None},
            byon=True,
        )

    async def relink_byon(self, did_id: int, customer_id: int, verification_id: int) -> DidTable:
        """Point an already-owned BYON DID at a newer verification record."""
        changed = await self._dids.compare_and_set(
            did_id,
            {"status": DidStatus.ASSIGNED, "is_byon": True, "owner_customer_id": customer_id},
            {"byon_verification_id": verification_id},
        )
        if not changed:
            raise StateConflict("BYON DID changed concurrently", details={"did_id": did_id})
        refreshed = await self._dids.get(did_id)
        assert refreshed is not None
        return refreshed

    async def disable_byon(self, did_id: int) -> DidTable:
        """``assigned → disabled`` for a BYON number (administrator release)."""
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if not did.is_byon:
            raise InvalidStateTransition(did.status, DidStatus.DISABLED)
        return await self._transition(
            did_id,
            DidStatus.ASSIGNED,
            DidStatus.DISABLED,
            {**_CLEAR_OWNERSHIP},
            guard={"is_byon": True},
            byon=True,
        )
