"""Payment state machine.

The ``payments`` row is the authoritative record; the optional Redis cache
only serves reads. ``PAYMENT_TRANSITIONS`` is the closed set of legal status
changes and every change appends an immutable ``PaymentEvent``.

``settle`` is the single handler that applies a payment outcome to the order
(PAID/REFUNDED; a failed payment leaves the order untouched). Gateway
callbacks, simulated success and status queries all go through it.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rental_core.cache import PaymentCache
from rental_core.database import DatabaseSessionManager, is_write_conflict
from rental_core.errors import (
    ConflictError, InvalidTransition, OrderNotFound, PaymentNotFound, ValidationError,
)
from rental_core.lifecycle import OrderLifecycle, PendingEvent
from rental_core.messaging import EventPublisher
from rental_core.models import Order, OrderPaymentStatus, Payment, PaymentEvent, PaymentStatus, utcnow
from rental_core.providers import OrderInfo, PaymentResult, ProviderRegistry, RefundInfo, RefundResult

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING, PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: {PaymentStatus.REFUNDING},
    PaymentStatus.REFUNDING: {PaymentStatus.REFUNDED, PaymentStatus.SUCCESS},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Statuses reached only after a committed SUCCESS
SETTLED_STATUSES = {PaymentStatus.SUCCESS, PaymentStatus.REFUNDING, PaymentStatus.REFUNDED}


def can_transition(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return to_status in PAYMENT_TRANSITIONS.get(from_status, set())


def snapshot(payment: Payment) -> dict:
    return {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "method": payment.method,
        "status": payment.status.value,
        "trade_no": payment.trade_no,
        "payment_url": payment.payment_url,
        "qr_code": payment.qr_code,
        "refund_id": payment.refund_id,
        "refund_amount": payment.refund_amount,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


class PaymentService:

    def __init__(
        self,
        db: DatabaseSessionManager,
        registry: ProviderRegistry,
        lifecycle: OrderLifecycle,
        publisher: EventPublisher,
        cache: PaymentCache | None = None,
        max_amount: int = 100_000_000,
    ):
        self._db = db
        self.registry = registry
        self._lifecycle = lifecycle
        self._publisher = publisher
        self._cache = cache
        self.max_amount = max_amount

    # Operations

    async def create_payment(self, order_info: OrderInfo, provider_id: str | None = None) -> PaymentResult:
        self.validate_order_info(order_info)
        provider = self.registry.get(provider_id)

        async with self._db.session() as session:
            if await session.get(Order, order_info.order_id) is None:
                raise OrderNotFound(order_info.order_id)

        logger.info(
            f"Creating payment for order {order_info.order_id} via {provider.name}",
            extra={"order_id": order_info.order_id, "provider": provider.provider_id.value},
        )
        try:
            result = await provider.create_payment(order_info)
        except Exception as e:
            logger.error(
                f"Payment creation failed for order {order_info.order_id}: {e}",
                extra={"order_id": order_info.order_id, "provider": provider.provider_id.value},
            )
            raise

        async with self._db.session() as session:
            async with session.begin():
                session.add(Payment(
                    id=result.payment_id,
                    order_id=order_info.order_id,
                    user_id=order_info.user_id,
                    amount=order_info.amount,
                    method=provider.provider_id.value,
                    status=PaymentStatus.PENDING,
                    payment_url=result.payment_url,
                    qr_code=result.qr_code,
                ))
                # Payment row must exist before its first event
                await session.flush()
                self.append_event(session, result.payment_id, "CREATED", {
                    "order_id": order_info.order_id,
                    "amount": order_info.amount,
                    "provider": provider.provider_id.value,
                })
        return result

    async def query_payment_status(self, payment_id: str) -> PaymentStatus:
        info = await self.get_payment_info(payment_id)
        cached_status = PaymentStatus(info["status"])
        provider = self.registry.get(info["method"])
        remote_status = await provider.query_payment(payment_id)
        if remote_status == cached_status:
            return remote_status

        async def apply(session, payment):
            if remote_status == payment.status:
                return []
            if not can_transition(payment.status, remote_status):
                logger.warning(
                    f"Ignoring provider status {remote_status.value} for payment in {payment.status.value}",
                    extra={"payment_id": payment_id, "provider": payment.method},
                )
                return []
            return await self.settle(session, payment, remote_status)

        payment = await self._write(payment_id, apply)
        return payment.status

    async def refund_payment(self, payment_id: str, amount: int, reason: str) -> RefundResult:
        if amount is None or amount <= 0:
            raise ValidationError("Refund amount must be greater than 0")

        async def reserve(session, payment):
            if payment.status != PaymentStatus.SUCCESS:
                raise ValidationError("Only successful payments can be refunded")
            if amount > payment.amount:
                raise ValidationError("Refund amount cannot exceed the paid amount")
            return await self.settle(
                session, payment, PaymentStatus.REFUNDING,
                event_type="REFUND_REQUESTED", details={"refund_amount": amount, "reason": reason},
            )

        payment = await self._write(payment_id, reserve)
        provider = self.registry.get(payment.method)
        logger.info(
            f"Refunding {amount} on payment {payment_id}",
            extra={"payment_id": payment_id, "provider": payment.method},
        )
        try:
            result = await provider.refund(RefundInfo(
                payment_id=payment_id,
                refund_amount=amount,
                total_amount=payment.amount,
                reason=reason,
            ))
        except Exception as e:
            logger.error(f"Refund failed for payment {payment_id}: {e}", extra={"payment_id": payment_id})

            async def fallback(session, locked):
                return await self.settle(
                    session, locked, PaymentStatus.SUCCESS,
                    event_type="REFUND_FAILED", details={"error": str(e)},
                )

            await self._write(payment_id, fallback)
            raise

        async def record(session, locked):
            locked.refund_id = result.refund_id
            locked.refund_amount = result.refund_amount
            locked.updated_at = utcnow()
            self.append_event(session, payment_id, "REFUND_ACCEPTED", {
                "refund_id": result.refund_id,
                "refund_amount": result.refund_amount,
            })
            return []

        await self._write(payment_id, record)
        return result

    async def settle_refund(self, payment_id: str, succeeded: bool) -> Payment:
        target = PaymentStatus.REFUNDED if succeeded else PaymentStatus.SUCCESS
        event_type = "REFUNDED" if succeeded else "REFUND_FAILED"

        async def apply(session, payment):
            return await self.settle(session, payment, target, event_type=event_type)

        return await self._write(payment_id, apply)

    async def cancel_payment(self, payment_id: str) -> Payment:
        async def apply(session, payment):
            if payment.status != PaymentStatus.PENDING:
                raise ValidationError("Only pending payments can be cancelled")
            return await self.settle(
                session, payment, PaymentStatus.CANCELLED,
                event_type="CANCELLED", details={"reason": "cancelled by user"},
            )

        payment = await self._write(payment_id, apply)
        logger.info(f"Payment {payment_id} cancelled", extra={"payment_id": payment_id})
        return payment

    async def get_payment_info(self, payment_id: str) -> dict:
        if self._cache is not None:
            cached = await self._cache.get(payment_id)
            if cached is not None:
                return cached
        async with self._db.session() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(payment_id)
            info = snapshot(payment)
        if self._cache is not None:
            await self._cache.set(payment_id, info)
        return info

    async def get_payment_events(self, payment_id: str) -> list[dict]:
        async with self._db.session() as session:
            if await session.get(Payment, payment_id) is None:
                raise PaymentNotFound(payment_id)
            result = await session.execute(
                select(PaymentEvent)
                .where(PaymentEvent.payment_id == payment_id)
                .order_by(PaymentEvent.created_at, PaymentEvent.id)
            )
            return [
                {
                    "event": event.event_type,
                    "data": event.payload,
                    "timestamp": event.created_at.isoformat(),
                }
                for event in result.scalars().all()
            ]

    # Shared handlers

    def validate_order_info(self, order_info: OrderInfo):
        if not (order_info.order_id and order_info.amount and order_info.title and order_info.user_id):
            raise ValidationError("Order information is incomplete")
        if order_info.amount <= 0:
            raise ValidationError("Payment amount must be greater than 0")
        if order_info.amount > self.max_amount:
            raise ValidationError("Payment amount is too large")

    async def lock_payment(self, session: AsyncSession, payment_id: str) -> Payment:
        result = await session.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound(payment_id)
        return payment

    async def settle(
        self,
        session: AsyncSession,
        payment: Payment,
        target: PaymentStatus,
        trade_no: str | None = None,
        event_type: str = "STATUS_CHANGED",
        details: dict | None = None,
    ) -> list[PendingEvent]:
        """Move a locked payment to ``target`` and apply the outcome to its order."""
        previous = payment.status
        if not can_transition(previous, target):
            raise InvalidTransition(previous, target)

        payment.status = target
        if trade_no:
            payment.trade_no = trade_no
        payment.updated_at = utcnow()
        self.append_event(session, payment.id, event_type, {
            "old_status": previous.value,
            "new_status": target.value,
            **({"trade_no": trade_no} if trade_no else {}),
            **(details or {}),
        })
        logger.info(
            f"Payment {payment.id} status {previous.value} -> {target.value}",
            extra={"payment_id": payment.id, "order_id": payment.order_id, "trade_no": trade_no},
        )

        event_payload = {
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "amount": payment.amount,
            "trade_no": payment.trade_no,
        }
        if target == PaymentStatus.SUCCESS and previous != PaymentStatus.REFUNDING:
            order = await self._lifecycle.lock_order(session, payment.order_id)
            events = await self._lifecycle.apply_payment_result(session, order, OrderPaymentStatus.PAID)
            return events + [PendingEvent("payment.succeeded", "PaymentSucceeded", event_payload)]
        if target == PaymentStatus.FAILED:
            # The order stays as-is; another payment may already have paid it
            return [PendingEvent("payment.failed", "PaymentFailed", event_payload)]
        if target == PaymentStatus.REFUNDED:
            order = await self._lifecycle.lock_order(session, payment.order_id)
            events = await self._lifecycle.apply_payment_result(session, order, OrderPaymentStatus.REFUNDED)
            return events + [PendingEvent("payment.refunded", "PaymentRefunded", event_payload)]
        return []

    @staticmethod
    def append_event(session: AsyncSession, payment_id: str, event_type: str, payload: dict):
        session.add(PaymentEvent(payment_id=payment_id, event_type=event_type, payload=payload))

    async def publish_all(self, events: list[PendingEvent]):
        await self._lifecycle.publish_all(events)

    async def invalidate(self, payment_id: str):
        if self._cache is not None:
            await self._cache.invalidate(payment_id)

    async def _write(self, payment_id: str, mutate) -> Payment:
        async with self._db.session() as session:
            try:
                async with session.begin():
                    payment = await self.lock_payment(session, payment_id)
                    events = await mutate(session, payment)
            except (StaleDataError, DBAPIError) as e:
                if is_write_conflict(e):
                    raise ConflictError(f"Payment {payment_id} was modified concurrently, retry")
                raise
        await self.invalidate(payment_id)
        await self.publish_all(events)
        return payment
