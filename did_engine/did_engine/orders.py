"""Order approval workflow for deferred-billing (postpaid) customers.

A postpaid customer does not pay from balance.  Ordering a DID reserves it
for :data:`~did_engine.inventory.RESERVATION_HOURS` and opens a
``pending_approval`` order with the prices frozen at request time.  An
administrator then approves (DID assigned, gateway invoice issued) or
rejects (reservation released).  Orders nobody acted on are expired by
:meth:`DidOrderService.expire_orders`.

Every order transition is a compare-and-set on ``status =
'pending_approval'``, so a terminal order is never touched twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from did_engine.billing.invoices import InvoiceWriter
from did_engine.clock import Clock, SystemClock, as_utc
from did_engine.errors import (
    CustomerNotFound,
    CustomerNotPostpaid,
    DidEngineError,
    DidNotAvailable,
    DidNotFound,
    DidProvisionFailed,
    OrderNotFound,
    OrderNotPending,
)
from did_engine.inventory import RESERVATION_HOURS, InventoryStateMachine
from did_engine.proration import calculate_first_period
from did_engine.state.repository import CustomerRepository, DidOrderRepository, DidRepository
from did_engine.state.tables import (
    BillingMode,
    CustomerTable,
    DidOrderTable,
    DidStatus,
    DidTable,
    InvoiceTable,
    InvoiceType,
    OrderStatus,
)

logger = logging.getLogger(__name__)


class OrderNotifier(Protocol):
    """Receives order lifecycle events (e.g. to send e-mail)."""

    async def order_created(self, order: DidOrderTable, did: DidTable) -> None: ...

    async def order_approved(self, order: DidOrderTable, did: DidTable) -> None: ...

    async def order_rejected(self, order: DidOrderTable, did: DidTable | None) -> None: ...


@dataclass(frozen=True)
class ApprovalResult:
    order: DidOrderTable
    did: DidTable
    invoice: InvoiceTable | None


@dataclass
class ExpiryStats:
    dry_run: bool = False
    orders_checked: int = 0
    orders_expired: int = 0
    dids_released: int = 0
    errors: int = 0
    expired_order_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "orders_checked": self.orders_checked,
            "orders_expired": self.orders_expired,
            "dids_released": self.dids_released,
            "errors": self.errors,
            "expired_order_ids": list(self.expired_order_ids),
        }


class DidOrderService:
    """Create, approve, reject and expire DID orders.

    Parameters
    ----------
    session:
        Active async session; the caller commits.
    clock:
        Time source for reservation windows and order timestamps.
    notifier:
        Optional lifecycle hook.  Its failures are logged, never raised.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock | None = None,
        notifier: OrderNotifier | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._customers = CustomerRepository(session)
        self._dids = DidRepository(session)
        self._orders = DidOrderRepository(session)
        self._inventory = InventoryStateMachine(session, clock=self._clock)
        self._invoices = InvoiceWriter(session, clock=self._clock)

    # -- Helpers ----------------------------------------------------------

    async def _postpaid_customer(self, customer_id: int) -> CustomerTable:
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", details={"customer_id": customer_id})
        if customer.billing_mode != BillingMode.POSTPAID:
            raise CustomerNotPostpaid(
                "Only postpaid customers can place DID orders; prepaid customers purchase directly",
                details={"billing_mode": customer.billing_mode},
            )
        return customer

    async def _pending_order(self, order_id: int) -> DidOrderTable:
        order = await self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        if order.status != OrderStatus.PENDING_APPROVAL:
            raise OrderNotPending(
                f"Order {order_id} is {order.status}, not pending approval",
                details={"order_id": order_id, "status": order.status},
            )
        return order

    async def _apply(self, order_id: int, to_status: str, **values: Any) -> DidOrderTable:
        if not await self._orders.transition(order_id, to_status, **values):
            raise OrderNotPending(f"Order {order_id} changed concurrently", details={"order_id": order_id})
        order = await self._orders.get(order_id)
        assert order is not None
        return order

    async def _notify(self, event: str, *args: Any) -> None:
        if self._notifier is None:
            return
        try:
            await getattr(self._notifier, event)(*args)
        except Exception:
            logger.warning("Order notifier %s failed", event, exc_info=True)

    # -- Customer ---------------------------------------------------------

    async def preview(self, customer_id: int, did_id: int) -> dict[str, Any]:
        """Fees the customer would be invoiced if the order were approved today."""
        await self._postpaid_customer(customer_id)
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if did.status != DidStatus.AVAILABLE:
            raise DidNotAvailable(f"DID {did.e164} is not available", details={"did_id": did_id, "status": did.status})
        period = calculate_first_period(did.setup_price, did.monthly_price, self._clock.now())
        return {
            "did_id": did.id,
            "e164": did.e164,
            **period.to_dict(),
            "requires_approval": True,
            "reservation_hours": RESERVATION_HOURS,
        }

    async def create_order(self, customer_id: int, did_id: int) -> DidOrderTable:
        """Reserve the DID and open a ``pending_approval`` order."""
        customer = await self._postpaid_customer(customer_id)
        did = await self._dids.get(did_id)
        if did is None:
            raise DidNotFound(f"DID {did_id} not found", details={"did_id": did_id})
        if did.status != DidStatus.AVAILABLE:
            raise DidNotAvailable(
                f"DID {did.e164} is not available for ordering",
                details={"did_id": did_id, "status": did.status},
            )

        reserved = await self._inventory.reserve(did.id, customer.id, hours=RESERVATION_HOURS)
        order = await self._orders.create(
            customer_id=customer.id,
            did_id=reserved.id,
            status=OrderStatus.PENDING_APPROVAL,
            requested_at=self._clock.now(),
            setup_fee=reserved.setup_price,
            monthly_fee=reserved.monthly_price,
        )
        logger.info(
            "DID order %s created: customer %s reserved %s until %s",
            order.id,
            customer.id,
            reserved.e164,
            reserved.reserved_until,
        )
        await self._notify("order_created", order, reserved)
        return order

    # -- Administrator ----------------------------------------------------

    async def approve(self, order_id: int, admin: str) -> ApprovalResult:
        """Assign the reserved DID and issue the gateway invoice."""
        order = await self._pending_order(order_id)
        now = self._clock.now()

        did = await self._dids.get(order.did_id) if order.did_id is not None else None
        if did is None:
            raise DidProvisionFailed("DID no longer exists", details={"order_id": order_id})
        if did.status != DidStatus.RESERVED:
            raise DidProvisionFailed(
                f"DID {did.e164} is no longer reserved (status: {did.status})",
                details={"order_id": order_id, "status": did.status},
            )
        if did.reserved_for_customer_id != order.customer_id:
            raise DidProvisionFailed(
                f"DID {did.e164} is reserved for a different customer",
                details={"order_id": order_id},
            )
        if did.reserved_until is not None and as_utc(did.reserved_until) < now:
            raise DidProvisionFailed(
                f"Reservation of DID {did.e164} expired at {did.reserved_until.isoformat()}",
                details={"order_id": order_id},
            )

        order = await self._apply(order_id, OrderStatus.APPROVED, approved_by=admin, approved_at=now)
        period = calculate_first_period(order.setup_fee, order.monthly_fee, now)
        assigned = await self._inventory.assign_reserved(did.id, order.customer_id, period.next_renewal_date)

        invoice: InvoiceTable | None = None
        if period.total_due_now > 0:
            try:
                async with self._session.begin_nested():
                    invoice = await self._invoices.pending_gateway(
                        prefix="DID-ORDER",
                        customer_id=order.customer_id,
                        invoice_type=InvoiceType.DID_PURCHASE,
                        amount=period.total_due_now,
                        description="DID order approved - awaiting payment",
                        period_start=period.period_start,
                        period_end=period.period_end,
                        did=assigned,
                    )
            except Exception:
                logger.error(
                    "Invoice creation failed for approved order %s (DID %s stays assigned)",
                    order.id,
                    assigned.e164,
                    exc_info=True,
                )

        logger.info(
            "DID order %s approved by %s: %s assigned to customer %s",
            order.id,
            admin,
            assigned.e164,
            order.customer_id,
        )
        await self._notify("order_approved", order, assigned)
        return ApprovalResult(order=order, did=assigned, invoice=invoice)

    async def reject(self, order_id: int, reason: str) -> DidOrderTable:
        """Reject the order and release the reservation if still held."""
        order = await self._pending_order(order_id)
        order = await self._apply(
            order_id,
            OrderStatus.REJECTED,
            rejection_reason=reason,
            rejected_at=self._clock.now(),
        )

        did = await self._dids.get(order.did_id) if order.did_id is not None else None
        if did is not None and did.status == DidStatus.RESERVED and did.reserved_for_customer_id == order.customer_id:
            did = await self._inventory.release_reservation(did.id)

        logger.info("DID order %s rejected: %s", order.id, reason)
        await self._notify("order_rejected", order, did)
        return order

    # -- Sweep ------------------------------------------------------------

    async def expire_orders(self, *, dry_run: bool = False) -> ExpiryStats:
        """Expire pending orders whose reservation lapsed or vanished."""
        now = self._clock.now()
        stats = ExpiryStats(dry_run=dry_run)

        for order in await self._orders.list_pending():
            stats.orders_checked += 1
            did = await self._dids.get(order.did_id) if order.did_id is not None else None
            held = (
                did is not None
                and did.status == DidStatus.RESERVED
                and did.reserved_for_customer_id == order.customer_id
            )
            lapsed = not held or (
                did is not None and did.reserved_until is not None and as_utc(did.reserved_until) < now
            )
            if not lapsed:
                continue

            if dry_run:
                stats.orders_expired += 1
                stats.expired_order_ids.append(order.id)
                if held:
                    stats.dids_released += 1
                continue

            try:
                async with self._session.begin_nested():
                    await self._apply(order.id, OrderStatus.EXPIRED)
                    if held and did is not None:
                        await self._inventory.release_reservation(did.id)
            except DidEngineError:
                stats.errors += 1
                logger.error("Could not expire order %s", order.id, exc_info=True)
                continue

            stats.orders_expired += 1
            stats.expired_order_ids.append(order.id)
            if held:
                stats.dids_released += 1
            logger.info("DID order %s expired", order.id)

        logger.info("Order expiry sweep finished: %s", stats.to_dict())
        return stats
