"""Webhook reconciliation.

Gateways deliver at least once. A verified notification is applied inside one
transaction holding the payment row lock; a payment that already settled is
acknowledged without touching state again, so replays of the same
``trade_no`` are no-ops. A callback is only accepted from the provider the
payment was created with, and the mock gateway is refused in production.

The acknowledgement reflects what actually committed. Verification failures
and unknown payments are answered with a 4xx and no state change. A verified
callback whose side effects fail is written to ``webhook_dead_letters`` and
answered with a failure so the gateway retries; ``replay_dead_letters``
re-applies the stored callbacks, least-attempted first, and abandons a letter
after ``max_replay_attempts`` failures.
"""

import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from rental_core.database import DatabaseSessionManager, is_write_conflict
from rental_core.errors import ForbiddenError, InvalidSignature, PaymentNotFound, RentalCoreError, WriteConflict
from rental_core.models import PaymentStatus, WebhookDeadLetter, utcnow
from rental_core.payments import SETTLED_STATUSES, PaymentService, can_transition
from rental_core.providers import Ack, CallbackRequest, PaymentCallback, ProviderId, ProviderRegistry

logger = logging.getLogger(__name__)

# Replaying these can never succeed
UNRECOVERABLE_ERRORS = (InvalidSignature, PaymentNotFound)


class WebhookReconciler:

    def __init__(
        self,
        db: DatabaseSessionManager,
        payments: PaymentService,
        registry: ProviderRegistry,
        allow_simulation: bool = True,
        max_replay_attempts: int = 5,
    ):
        self._db = db
        self._payments = payments
        self._registry = registry
        self.allow_simulation = allow_simulation
        self.max_replay_attempts = max_replay_attempts

    async def handle_payment_callback(self, provider_id: str, request: CallbackRequest) -> Ack:
        try:
            provider = self._registry.get(provider_id)
        except RentalCoreError as e:
            logger.warning(f"Callback for unusable provider {provider_id}: {e.message}", extra={"provider": provider_id})
            return _error_ack(e)

        if provider.provider_id == ProviderId.MOCK and not self.allow_simulation:
            error = ForbiddenError("Mock payment callbacks are not accepted in production")
            logger.warning(error.message, extra={"provider": provider_id, "error_code": error.code})
            return _error_ack(error)

        try:
            callback = await provider.verify_callback(request)
        except InvalidSignature as e:
            logger.warning(
                f"Rejected {provider_id} callback: {e.message}",
                extra={"provider": provider_id, "error_code": e.code},
            )
            return _error_ack(e)

        if callback is None:
            logger.info(f"Ignoring non-terminal {provider_id} notification", extra={"provider": provider_id})
            return provider.acknowledge(True)

        try:
            await self.apply(callback, provider.provider_id.value)
        except UNRECOVERABLE_ERRORS as e:
            logger.warning(
                f"Rejected {provider_id} callback for payment {callback.payment_id}: {e.message}",
                extra={"provider": provider_id, "payment_id": callback.payment_id, "error_code": e.code},
            )
            return _error_ack(e)
        except Exception as e:
            logger.error(
                f"Failed to apply {provider_id} callback for payment {callback.payment_id}: {e}",
                exc_info=True,
                extra={"provider": provider_id, "payment_id": callback.payment_id, "trade_no": callback.trade_no},
            )
            await self._dead_letter(provider.provider_id.value, callback, e)
            return provider.acknowledge(False)
        return provider.acknowledge(True)

    async def apply(self, callback: PaymentCallback, provider_id: str) -> bool:
        """Apply a callback verified by ``provider_id``. Returns False when it was a duplicate."""
        applied, events = await self._apply_once(callback, provider_id)
        await self._payments.invalidate(callback.payment_id)
        await self._payments.publish_all(events)
        return applied

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.05, max=0.5),
        retry=retry_if_exception_type(WriteConflict),
        reraise=True,
    )
    async def _apply_once(self, callback: PaymentCallback, provider_id: str):
        async with self._db.session() as session:
            try:
                async with session.begin():
                    payment = await self._payments.lock_payment(session, callback.payment_id)
                    if payment.method != provider_id:
                        raise InvalidSignature(
                            f"Payment {payment.id} was issued by {payment.method}, not {provider_id}"
                        )
                    if callback.amount != payment.amount:
                        raise InvalidSignature(
                            f"Callback amount {callback.amount} does not match payment amount {payment.amount}"
                        )

                    if callback.status == PaymentStatus.SUCCESS and payment.status in SETTLED_STATUSES:
                        if payment.trade_no != callback.trade_no:
                            logger.warning(
                                f"Settled payment {payment.id} received trade_no {callback.trade_no}, "
                                f"keeping {payment.trade_no}",
                                extra={"payment_id": payment.id, "trade_no": callback.trade_no},
                            )
                        else:
                            logger.info(
                                f"Duplicate callback for payment {payment.id}",
                                extra={"payment_id": payment.id, "trade_no": callback.trade_no},
                            )
                        return False, []
                    if not can_transition(payment.status, callback.status):
                        logger.info(
                            f"Callback status {callback.status.value} ignored for payment in {payment.status.value}",
                            extra={"payment_id": payment.id, "trade_no": callback.trade_no},
                        )
                        return False, []

                    events = await self._payments.settle(
                        session, payment, callback.status,
                        trade_no=callback.trade_no, event_type="CALLBACK_RECEIVED",
                    )
            except (StaleDataError, DBAPIError) as e:
                if is_write_conflict(e):
                    raise WriteConflict(str(e)) from e
                raise
        return True, events

    async def simulate_success(self, payment_id: str) -> dict:
        """Settle a payment as if its own gateway had confirmed it, through the regular success path."""
        if not self.allow_simulation:
            raise ForbiddenError("Simulated payments are not allowed in production")
        info = await self._payments.get_payment_info(payment_id)
        mock = self._registry.mock
        request = mock.build_callback(payment_id, info["order_id"], info["amount"])
        callback = await mock.verify_callback(request)
        await self.apply(callback, info["method"])
        logger.info(f"Simulated success for payment {payment_id}", extra={"payment_id": payment_id})
        return await self._payments.get_payment_info(payment_id)

    async def replay_dead_letters(self, limit: int = 50) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(WebhookDeadLetter)
                .where(WebhookDeadLetter.resolved.is_(False))
                .where(WebhookDeadLetter.abandoned.is_(False))
                .order_by(WebhookDeadLetter.attempts, WebhookDeadLetter.updated_at)
                .limit(limit)
            )
            letters = list(result.scalars().all())

        resolved = 0
        for letter in letters:
            error = None
            try:
                await self.apply(PaymentCallback.from_payload(letter.payload), letter.provider)
            except Exception as e:
                error = e
                logger.warning(
                    f"Dead letter {letter.id} replay failed: {e}",
                    extra={"payment_id": letter.payment_id, "attempt": letter.attempts + 1},
                )
            async with self._db.session() as session:
                async with session.begin():
                    stored = await session.get(WebhookDeadLetter, letter.id)
                    stored.attempts += 1
                    stored.updated_at = utcnow()
                    if error is None:
                        stored.resolved = True
                        resolved += 1
                        continue
                    stored.error = str(error)
                    if isinstance(error, UNRECOVERABLE_ERRORS) or stored.attempts >= self.max_replay_attempts:
                        stored.abandoned = True
                        logger.error(
                            f"Abandoned dead letter {stored.id} after {stored.attempts} attempts: {error}",
                            extra={"payment_id": stored.payment_id, "attempt": stored.attempts},
                        )
        if resolved:
            logger.info(f"Replayed {resolved} dead-lettered callbacks")
        return resolved

    async def _dead_letter(self, provider_id: str, callback: PaymentCallback, error: Exception):
        try:
            async with self._db.session() as session:
                async with session.begin():
                    result = await session.execute(
                        select(WebhookDeadLetter).where(
                            WebhookDeadLetter.payment_id == callback.payment_id,
                            WebhookDeadLetter.trade_no == callback.trade_no,
                            WebhookDeadLetter.resolved.is_(False),
                            WebhookDeadLetter.abandoned.is_(False),
                        )
                    )
                    existing = result.scalars().first()
                    if existing is not None:
                        existing.attempts += 1
                        existing.error = str(error)
                        existing.updated_at = utcnow()
                    else:
                        session.add(WebhookDeadLetter(
                            provider=provider_id,
                            payment_id=callback.payment_id,
                            trade_no=callback.trade_no,
                            payload=callback.to_payload(),
                            error=str(error),
                        ))
        except Exception as e:
            # The failed ack still makes the gateway redeliver
            logger.error(
                f"Could not dead-letter callback for payment {callback.payment_id}: {e}",
                exc_info=True,
                extra={"payment_id": callback.payment_id},
            )


def _error_ack(error: RentalCoreError) -> Ack:
    return Ack(ok=False, status_code=error.http_status, content=json.dumps(error.to_response()))
