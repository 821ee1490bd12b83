"""Order lifecycle state machine.

``ORDER_TRANSITIONS`` is the closed set of legal status changes; nothing else
writes ``Order.status``. Entering COMPLETED or CANCELLED releases the resource
through the ledger inside the same transaction.

Each operation reads the order under a row lock and writes it back guarded by
the order version counter, so a transition based on a stale read fails with
``ConflictError`` instead of overwriting a concurrent change. Nothing here is
retried automatically.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rental_core.database import DatabaseSessionManager, is_write_conflict
from rental_core.errors import (
    ConflictError, ForbiddenError, InvalidTransition, OrderNotFound, OrderNotYetDue, ValidationError,
)
from rental_core.ledger import ResourceLedger
from rental_core.messaging import EventPublisher
from rental_core.models import Order, OrderPaymentStatus, OrderStatus, utcnow

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.ACTIVE, OrderStatus.CANCELLED},
    OrderStatus.ACTIVE: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.DISPUTED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

RELEASING_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

ROUTING_KEYS = {
    OrderStatus.CONFIRMED: ("order.confirmed", "OrderConfirmed"),
    OrderStatus.CANCELLED: ("order.cancelled", "OrderCancelled"),
    OrderStatus.COMPLETED: ("order.completed", "OrderCompleted"),
}

ROLES = ("renter", "owner")


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in ORDER_TRANSITIONS.get(from_status, set())


def is_terminal(status: OrderStatus) -> bool:
    return not ORDER_TRANSITIONS.get(status)


@dataclass
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class PendingEvent:
    routing_key: str
    event_type: str
    payload: dict = field(default_factory=dict)


class OrderLifecycle:

    def __init__(
        self,
        db: DatabaseSessionManager,
        ledger: ResourceLedger,
        publisher: EventPublisher,
        clock=utcnow,
    ):
        self._db = db
        self._ledger = ledger
        self._publisher = publisher
        self._clock = clock

    # Transitions

    async def confirm_order(self, order_id: str, caller_id: str) -> Order:
        async def confirm(session, order):
            if order.owner_id != caller_id:
                raise ForbiddenError("Only the resource owner can confirm this order")
            if order.status != OrderStatus.PENDING:
                raise InvalidTransition(order.status, OrderStatus.CONFIRMED)
            return await self.apply_transition(session, order, OrderStatus.CONFIRMED)

        return await self._run(order_id, confirm)

    async def cancel_order(self, order_id: str, caller_id: str, reason: str | None = None) -> Order:
        async def cancel(session, order):
            self._ensure_party(order, caller_id)
            return await self.apply_transition(session, order, OrderStatus.CANCELLED, notes=reason)

        return await self._run(order_id, cancel)

    async def complete_order(self, order_id: str, caller_id: str) -> Order:
        async def complete(session, order):
            self._ensure_party(order, caller_id)
            if order.status != OrderStatus.ACTIVE:
                raise InvalidTransition(order.status, OrderStatus.COMPLETED)
            if self._clock() < order.end_date:
                raise OrderNotYetDue(order.id)
            return await self.apply_transition(session, order, OrderStatus.COMPLETED)

        return await self._run(order_id, complete)

    async def update_order_status(
        self, order_id: str, caller_id: str, status: OrderStatus | str, notes: str | None = None,
    ) -> Order:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")

        async def update(session, order):
            self._ensure_party(order, caller_id)
            return await self.apply_transition(session, order, target, notes=notes)

        return await self._run(order_id, update)

    async def apply_transition(
        self, session: AsyncSession, order: Order, target: OrderStatus, notes: str | None = None,
    ) -> list[PendingEvent]:
        """Validate and apply one transition on an order already locked in ``session``."""
        if not can_transition(order.status, target):
            raise InvalidTransition(order.status, target)

        previous = order.status
        order.status = target
        if notes:
            order.notes = notes
        order.updated_at = utcnow()
        if target in RELEASING_STATUSES:
            await self._ledger.release(session, order.resource_id, exclude_order_id=order.id)

        logger.info(
            f"Order {order.id} status {previous.value} -> {target.value}",
            extra={"order_id": order.id},
        )
        routing_key, event_type = ROUTING_KEYS.get(target, ("order.status_changed", "OrderStatusChanged"))
        return [PendingEvent(routing_key, event_type, {
            "order_id": order.id,
            "resource_id": order.resource_id,
            "renter_id": order.renter_id,
            "owner_id": order.owner_id,
            "previous_status": previous.value,
            "status": target.value,
        })]

    async def apply_payment_result(
        self, session: AsyncSession, order: Order, payment_status: OrderPaymentStatus,
    ) -> list[PendingEvent]:
        """Record a settled payment on the order; a first successful payment confirms a PENDING order."""
        events = []
        order.payment_status = payment_status
        order.updated_at = utcnow()
        if payment_status == OrderPaymentStatus.PAID:
            if order.status == OrderStatus.PENDING:
                events.extend(await self.apply_transition(session, order, OrderStatus.CONFIRMED))
            elif is_terminal(order.status):
                logger.warning(
                    f"Payment settled for order {order.id} in terminal state {order.status.value}",
                    extra={"order_id": order.id},
                )
        logger.info(
            f"Order {order.id} payment status -> {payment_status.value}",
            extra={"order_id": order.id},
        )
        return events

    async def lock_order(self, session: AsyncSession, order_id: str) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def publish_all(self, events: list[PendingEvent]):
        for event in events:
            await self._publisher.publish(event.routing_key, event.event_type, event.payload)

    # Queries

    async def get_order(self, order_id: str, caller_id: str) -> Order:
        async with self._db.session() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            self._ensure_party(order, caller_id, "view")
            return order

    async def list_orders(
        self, user_id: str, role: str, page: int = 1, limit: int = 20, status: OrderStatus | str | None = None,
    ) -> Page:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}")
        if page < 1 or limit < 1 or limit > 100:
            raise ValidationError("Page must be >= 1 and limit between 1 and 100")

        filters = [Order.renter_id == user_id if role == "renter" else Order.owner_id == user_id]
        if status is not None:
            try:
                filters.append(Order.status == OrderStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown order status: {status}")

        async with self._db.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(Order).where(*filters)
            )).scalar_one()
            result = await session.execute(
                select(Order)
                .where(*filters)
                .order_by(Order.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return Page(items=list(result.scalars().all()), page=page, limit=limit, total=total)

    async def get_upcoming_orders(self, user_id: str, days: int = 7) -> list[Order]:
        horizon = self._clock() + timedelta(days=days)
        async with self._db.session() as session:
            result = await session.execute(
                select(Order)
                .where(
                    or_(Order.renter_id == user_id, Order.owner_id == user_id),
                    Order.status == OrderStatus.ACTIVE,
                    Order.end_date <= horizon,
                )
                .order_by(Order.end_date.asc())
            )
            return list(result.scalars().all())

    async def get_order_stats(self, user_id: str, role: str) -> dict:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}")
        party = Order.renter_id == user_id if role == "renter" else Order.owner_id == user_id

        async with self._db.session() as session:
            rows = (await session.execute(
                select(Order.status, func.count()).where(party).group_by(Order.status)
            )).all()
            revenue = (await session.execute(
                select(func.coalesce(func.sum(Order.total_price), 0))
                .where(party, Order.status == OrderStatus.COMPLETED)
            )).scalar_one()

        counts = {status: count for status, count in rows}
        return {
            "total_orders": sum(counts.values()),
            "pending_orders": counts.get(OrderStatus.PENDING, 0),
            "active_orders": counts.get(OrderStatus.ACTIVE, 0),
            "completed_orders": counts.get(OrderStatus.COMPLETED, 0),
            "cancelled_orders": counts.get(OrderStatus.CANCELLED, 0),
            "total_revenue": int(revenue),
        }

    # Internals

    async def _run(self, order_id: str, mutate) -> Order:
        async with self._db.session() as session:
            try:
                async with session.begin():
                    order = await self.lock_order(session, order_id)
                    events = await mutate(session, order)
            except (StaleDataError, DBAPIError) as e:
                if is_write_conflict(e):
                    logger.warning(
                        f"Concurrent modification of order {order_id}",
                        extra={"order_id": order_id},
                    )
                    raise ConflictError(f"Order {order_id} was modified concurrently, reload and retry")
                raise
        await self.publish_all(events)
        return order

    @staticmethod
    def _ensure_party(order: Order, caller_id: str, action: str = "modify"):
        if caller_id not in (order.renter_id, order.owner_id):
            raise ForbiddenError(f"Not allowed to {action} this order")
