"""Booking conflict resolution.

Conflict is decided by interval intersection against live orders, never by the
ledger flag alone. Windows ``[s1, e1]`` and ``[s2, e2]`` intersect when
``s1 <= e2 and s2 <= e1`` (both bounds inclusive, so a booking ending on a day
blocks another starting on that same day).

The conflict read, the order insert and the ledger hold share one transaction
that holds the resource row lock; the resource version counter catches a
racing booking at commit time on backends without row locks.
"""

import logging
import math
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from rental_core.database import DatabaseSessionManager, is_write_conflict
from rental_core.errors import (
    ConflictError, InvalidDateRange, SelfBookingForbidden, SlotConflict, WriteConflict,
)
from rental_core.ledger import ResourceLedger
from rental_core.messaging import EventPublisher
from rental_core.models import (
    LIVE_ORDER_STATUSES, DeliveryMethod, Order, OrderPaymentStatus, OrderStatus, ResourceStatus, as_utc, utcnow,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def windows_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    return s1 <= e2 and s2 <= e1


def rental_days(start_date: datetime, end_date: datetime) -> int:
    return math.ceil((end_date - start_date).total_seconds() / SECONDS_PER_DAY)


class BookingConflictResolver:

    def __init__(
        self,
        db: DatabaseSessionManager,
        ledger: ResourceLedger,
        publisher: EventPublisher,
        delivery_fee: int = 1000,
        clock=utcnow,
    ):
        self._db = db
        self._ledger = ledger
        self._publisher = publisher
        self.delivery_fee = delivery_fee
        self._clock = clock

    async def create_order(
        self,
        resource_id: str,
        renter_id: str,
        start_date: datetime,
        end_date: datetime,
        delivery_method: DeliveryMethod | str = DeliveryMethod.PICKUP,
        delivery_address: str | None = None,
        notes: str | None = None,
    ) -> Order:
        start_date = as_utc(start_date)
        end_date = as_utc(end_date)
        if start_date >= end_date:
            raise InvalidDateRange("Start date must be earlier than end date")
        if start_date < self._clock():
            raise InvalidDateRange("Start date cannot be in the past")
        delivery_method = DeliveryMethod(delivery_method)

        try:
            order = await self._book(
                resource_id, renter_id, start_date, end_date,
                delivery_method, delivery_address, notes,
            )
        except WriteConflict:
            logger.warning(
                f"Booking retries exhausted for resource {resource_id}",
                extra={"resource_id": resource_id},
            )
            raise SlotConflict(resource_id)

        logger.info(
            f"Order {order.id} created for resource {resource_id}",
            extra={"order_id": order.id, "resource_id": resource_id},
        )
        await self._publisher.publish("order.created", "OrderCreated", {
            "order_id": order.id,
            "resource_id": resource_id,
            "renter_id": renter_id,
            "owner_id": order.owner_id,
            "start_date": order.start_date,
            "end_date": order.end_date,
            "total_price": order.total_price,
        })
        return order

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.05, max=0.5),
        retry=retry_if_exception_type(WriteConflict),
        reraise=True,
    )
    async def _book(self, resource_id, renter_id, start_date, end_date, delivery_method, delivery_address, notes):
        async with self._db.session() as session:
            try:
                async with session.begin():
                    resource = await self._ledger.lock(session, resource_id)
                    if resource.owner_id == renter_id:
                        raise SelfBookingForbidden()
                    if resource.status in (ResourceStatus.MAINTENANCE, ResourceStatus.UNAVAILABLE):
                        raise ConflictError(
                            f"Resource {resource_id} is not available for booking",
                            code="RESOURCE_UNAVAILABLE",
                        )
                    if await self.find_conflict(session, resource_id, start_date, end_date):
                        raise SlotConflict(resource_id)

                    delivery_fee = self.delivery_fee if delivery_method == DeliveryMethod.DELIVERY else 0
                    order = Order(
                        id=str(uuid4()),
                        resource_id=resource_id,
                        renter_id=renter_id,
                        owner_id=resource.owner_id,
                        start_date=start_date,
                        end_date=end_date,
                        total_price=resource.price * rental_days(start_date, end_date) + delivery_fee,
                        deposit=resource.deposit_amount or 0,
                        delivery_method=delivery_method,
                        delivery_address=delivery_address,
                        delivery_fee=delivery_fee,
                        notes=notes,
                        status=OrderStatus.PENDING,
                        payment_status=OrderPaymentStatus.PENDING,
                    )
                    session.add(order)
                    self._ledger.hold(resource)
            except (StaleDataError, DBAPIError) as e:
                if is_write_conflict(e):
                    logger.info(
                        f"Write conflict booking resource {resource_id}, retrying",
                        extra={"resource_id": resource_id},
                    )
                    raise WriteConflict(str(e)) from e
                raise
        return order

    @staticmethod
    async def find_conflict(
        session: AsyncSession, resource_id: str, start_date: datetime, end_date: datetime,
    ) -> Order | None:
        result = await session.execute(
            select(Order)
            .where(
                Order.resource_id == resource_id,
                Order.status.in_(LIVE_ORDER_STATUSES),
                Order.start_date <= end_date,
                Order.end_date >= start_date,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()
