import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from conftest import NOW, day, published_keys
from rental_core.errors import ForbiddenError, WriteConflict
from rental_core.models import Order, OrderPaymentStatus, OrderStatus, Payment, PaymentStatus, WebhookDeadLetter
from rental_core.providers import CallbackRequest, OrderInfo, PaymentCallback, ProviderId
from rental_core.webhooks import WebhookReconciler


@pytest.fixture
async def order(booking, add_resource):
    await add_resource()
    return await booking.create_order("res-1", "renter-1", day(1), day(3))


@pytest.fixture
async def payment(payments, order):
    return await payments.create_payment(OrderInfo(
        order_id=order.id, amount=15000, title="Camera rental", user_id="renter-1",
    ))


def mock_notice(payment_id, order_id, amount=15000, status="SUCCESS", trade_no="T-1") -> CallbackRequest:
    body = {"paymentId": payment_id, "orderId": order_id, "amount": amount, "tradeNo": trade_no, "status": status}
    return CallbackRequest(body=json.dumps(body).encode("utf-8"))


async def dead_letters(db) -> list[WebhookDeadLetter]:
    async with db.session() as session:
        result = await session.execute(select(WebhookDeadLetter).order_by(WebhookDeadLetter.id))
        return list(result.scalars().all())


async def load_order(db, order_id) -> Order:
    async with db.session() as session:
        return await session.get(Order, order_id)


@pytest.mark.asyncio
async def test_replayed_success_is_applied_once(db, payments, reconciler, mock_provider, publisher, order, payment):
    """
    Test case 1: simulating success then replaying the identical notification settles exactly once.
    """
    info = await reconciler.simulate_success(payment.payment_id)
    assert info["status"] == "SUCCESS"
    assert info["trade_no"] == f"mock_{payment.payment_id}"

    replay = mock_provider.build_callback(payment.payment_id, order.id, 15000)
    ack = await reconciler.handle_payment_callback("mock", replay)

    assert ack.ok is True
    assert ack.status_code == 200
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "SUCCESS"
    stored = await load_order(db, order.id)
    assert stored.payment_status == OrderPaymentStatus.PAID
    assert stored.status == OrderStatus.CONFIRMED
    events = [e["event"] for e in await payments.get_payment_events(payment.payment_id)]
    assert events == ["CREATED", "CALLBACK_RECEIVED"]
    assert published_keys(publisher).count("payment.succeeded") == 1


@pytest.mark.asyncio
async def test_apply_reports_duplicates(reconciler, mock_provider, order, payment):
    callback = await mock_provider.verify_callback(mock_notice(payment.payment_id, order.id))

    assert await reconciler.apply(callback, "mock") is True
    assert await reconciler.apply(callback, "mock") is False


@pytest.mark.asyncio
async def test_late_callback_with_other_trade_no_keeps_first(payments, reconciler, order, payment):
    await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id, trade_no="T-1"))
    ack = await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id, trade_no="T-2"))

    assert ack.ok is True
    assert (await payments.get_payment_info(payment.payment_id))["trade_no"] == "T-1"


@pytest.mark.asyncio
async def test_failed_payment_leaves_order_as_is(db, payments, reconciler, publisher, order, payment):
    ack = await reconciler.handle_payment_callback(
        "mock", mock_notice(payment.payment_id, order.id, status="FAILED"),
    )

    assert ack.ok is True
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "FAILED"
    stored = await load_order(db, order.id)
    assert stored.payment_status == OrderPaymentStatus.PENDING
    assert stored.status == OrderStatus.PENDING
    assert "payment.failed" in published_keys(publisher)


@pytest.mark.asyncio
async def test_failed_second_payment_keeps_order_paid(db, payments, reconciler, order, payment):
    """
    Test case 4: once one payment paid the order, a later payment failing on the same order changes nothing on it.
    """
    second = await payments.create_payment(OrderInfo(
        order_id=order.id, amount=15000, title="Camera rental", user_id="renter-1",
    ))

    await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id, trade_no="T-1"))
    ack = await reconciler.handle_payment_callback(
        "mock", mock_notice(second.payment_id, order.id, status="FAILED", trade_no="T-2"),
    )

    assert ack.ok is True
    assert (await payments.get_payment_info(second.payment_id))["status"] == "FAILED"
    stored = await load_order(db, order.id)
    assert stored.payment_status == OrderPaymentStatus.PAID
    assert stored.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_inapplicable_status_is_acknowledged_without_change(payments, reconciler, order, payment):
    ack = await reconciler.handle_payment_callback(
        "mock", mock_notice(payment.payment_id, order.id, status="PENDING"),
    )

    assert ack.ok is True
    assert len(await payments.get_payment_events(payment.payment_id)) == 1


@pytest.mark.asyncio
async def test_malformed_notification_is_rejected(reconciler):
    """
    Test case 2: an untrusted notification is answered 400 and changes nothing.
    """
    ack = await reconciler.handle_payment_callback("mock", CallbackRequest(body=b"not json"))

    assert ack.ok is False
    assert ack.status_code == 400
    assert json.loads(ack.content)["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_amount_mismatch_is_rejected(db, payments, reconciler, order, payment):
    ack = await reconciler.handle_payment_callback(
        "mock", mock_notice(payment.payment_id, order.id, amount=1),
    )

    assert ack.status_code == 400
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"
    assert await dead_letters(db) == []


@pytest.mark.asyncio
async def test_unusable_provider(reconciler):
    ack = await reconciler.handle_payment_callback("paypal", CallbackRequest(body=b"{}"))

    assert ack.ok is False
    assert ack.status_code == 400


@pytest.mark.asyncio
async def test_side_effect_failure_is_dead_lettered_and_replayed(db, payments, reconciler, order, payment):
    """
    Test case 3: a failure after verification returns a failed ack, is stored, and a later replay settles it.
    """
    notice = mock_notice(payment.payment_id, order.id)
    with patch.object(payments, "settle", new=AsyncMock(side_effect=RuntimeError("order table locked"))):
        first = await reconciler.handle_payment_callback("mock", notice)
        second = await reconciler.handle_payment_callback("mock", notice)

    assert first.ok is False
    assert first.status_code == 500
    assert second.ok is False
    letters = await dead_letters(db)
    assert len(letters) == 1
    assert letters[0].attempts == 2
    assert letters[0].resolved is False
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"

    assert await reconciler.replay_dead_letters() == 1

    assert (await payments.get_payment_info(payment.payment_id))["status"] == "SUCCESS"
    assert (await load_order(db, order.id)).payment_status == OrderPaymentStatus.PAID
    letters = await dead_letters(db)
    assert letters[0].resolved is True
    assert letters[0].attempts == 3


@pytest.mark.asyncio
async def test_callback_for_unknown_payment_is_rejected_not_stored(db, reconciler):
    ack = await reconciler.handle_payment_callback("mock", mock_notice("pay-missing", "order-missing"))

    assert ack.ok is False
    assert ack.status_code == 404
    assert json.loads(ack.content)["code"] == "PAYMENT_NOT_FOUND"
    assert await dead_letters(db) == []


async def store_letter(db, payment_id, order_id, updated_at, amount=15000, attempts=1) -> int:
    callback = PaymentCallback(
        payment_id=payment_id, order_id=order_id, trade_no=f"T-{payment_id}",
        amount=amount, status=PaymentStatus.SUCCESS,
    )
    letter = WebhookDeadLetter(
        provider="mock", payment_id=payment_id, trade_no=callback.trade_no,
        payload=callback.to_payload(), error="order table locked",
        attempts=attempts, created_at=updated_at, updated_at=updated_at,
    )
    async with db.session() as session:
        async with session.begin():
            session.add(letter)
    return letter.id


@pytest.mark.asyncio
async def test_unreplayable_letters_are_abandoned_and_do_not_block_newer_ones(db, payments, reconciler, order, payment):
    """
    Test case 5: letters that can never apply are retired, so a batch limit never starves a recoverable letter.
    """
    for i in range(3):
        await store_letter(db, f"pay-gone-{i}", "order-gone", NOW + timedelta(minutes=i))
    recoverable = await store_letter(db, payment.payment_id, order.id, NOW + timedelta(minutes=10))

    assert await reconciler.replay_dead_letters(limit=2) == 0
    assert await reconciler.replay_dead_letters(limit=2) == 1

    letters = {letter.id: letter for letter in await dead_letters(db)}
    assert letters[recoverable].resolved is True
    assert letters[recoverable].abandoned is False
    poison = [letter for letter in letters.values() if letter.id != recoverable]
    assert all(letter.abandoned and not letter.resolved for letter in poison)
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "SUCCESS"

    assert await reconciler.replay_dead_letters(limit=2) == 0
    assert all(letter.attempts == 2 for letter in await dead_letters(db))


@pytest.mark.asyncio
async def test_letter_is_abandoned_after_max_replay_attempts(db, payments, registry, order, payment):
    reconciler = WebhookReconciler(db, payments, registry, max_replay_attempts=3)
    notice = mock_notice(payment.payment_id, order.id)

    with patch.object(payments, "settle", new=AsyncMock(side_effect=RuntimeError("order table locked"))):
        await reconciler.handle_payment_callback("mock", notice)
        assert await reconciler.replay_dead_letters() == 0
        assert await reconciler.replay_dead_letters() == 0
        assert await reconciler.replay_dead_letters() == 0

    letters = await dead_letters(db)
    assert len(letters) == 1
    assert letters[0].attempts == 3
    assert letters[0].abandoned is True
    assert letters[0].resolved is False
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"


@pytest.mark.asyncio
async def test_replay_prefers_least_attempted_letters(db, payments, reconciler, order, payment):
    await store_letter(db, "pay-gone", "order-gone", NOW, attempts=4)
    fresh = await store_letter(db, payment.payment_id, order.id, NOW + timedelta(minutes=5))

    assert await reconciler.replay_dead_letters(limit=1) == 1

    letters = {letter.id: letter for letter in await dead_letters(db)}
    assert letters[fresh].resolved is True
    assert [letter.attempts for letter in letters.values() if letter.id != fresh] == [4]


@pytest.mark.asyncio
async def test_write_conflict_is_retried(payments, reconciler, mock_provider, order, payment):
    real_lock = payments.lock_payment
    calls = []

    async def flaky(session, payment_id):
        calls.append(payment_id)
        if len(calls) == 1:
            raise WriteConflict("version mismatch")
        return await real_lock(session, payment_id)

    callback = await mock_provider.verify_callback(mock_notice(payment.payment_id, order.id))
    with patch.object(payments, "lock_payment", new=flaky):
        assert await reconciler.apply(callback, "mock") is True

    assert len(calls) == 2
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "SUCCESS"


@pytest.mark.asyncio
async def test_simulation_disabled_in_production(db, payments, registry, payment):
    reconciler = WebhookReconciler(db, payments, registry, allow_simulation=False)

    with pytest.raises(ForbiddenError):
        await reconciler.simulate_success(payment.payment_id)

    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"


@pytest.mark.asyncio
async def test_callback_on_cancelled_payment_is_ignored(payments, reconciler, order, payment):
    await payments.cancel_payment(payment.payment_id)

    ack = await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id))

    assert ack.ok is True
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "CANCELLED"


async def reissue(db, payment_id, provider: ProviderId):
    async with db.session() as session:
        async with session.begin():
            stored = await session.get(Payment, payment_id)
            stored.method = provider.value


@pytest.mark.asyncio
async def test_callback_from_other_provider_is_rejected(db, payments, reconciler, order, payment):
    """
    Test case 6: a payment issued through Alipay cannot be settled by a notification on the mock route.
    """
    await reissue(db, payment.payment_id, ProviderId.ALIPAY_SANDBOX)

    ack = await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id))

    assert ack.ok is False
    assert ack.status_code == 400
    assert json.loads(ack.content)["code"] == "INVALID_SIGNATURE"
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"
    stored = await load_order(db, order.id)
    assert stored.payment_status == OrderPaymentStatus.PENDING
    assert stored.status == OrderStatus.PENDING
    assert await dead_letters(db) == []


@pytest.mark.asyncio
async def test_mock_callbacks_refused_in_production(db, payments, registry, order, payment):
    reconciler = WebhookReconciler(db, payments, registry, allow_simulation=False)

    ack = await reconciler.handle_payment_callback("mock", mock_notice(payment.payment_id, order.id))

    assert ack.ok is False
    assert ack.status_code == 403
    assert json.loads(ack.content)["code"] == "FORBIDDEN"
    assert (await payments.get_payment_info(payment.payment_id))["status"] == "PENDING"
    assert (await load_order(db, order.id)).payment_status == OrderPaymentStatus.PENDING


@pytest.mark.asyncio
async def test_simulation_settles_as_the_issuing_provider(db, payments, reconciler, order, payment):
    await reissue(db, payment.payment_id, ProviderId.ALIPAY_SANDBOX)

    info = await reconciler.simulate_success(payment.payment_id)

    assert info["status"] == "SUCCESS"
    assert info["method"] == "alipay_sandbox"
    assert (await load_order(db, order.id)).payment_status == OrderPaymentStatus.PAID
