from unittest.mock import patch

import pytest
from sqlalchemy import update

from conftest import day, published_keys
from rental_core.errors import (
    ConflictError, ForbiddenError, InvalidTransition, OrderNotFound, OrderNotYetDue, ValidationError,
)
from rental_core.lifecycle import ORDER_TRANSITIONS, can_transition, is_terminal
from rental_core.models import Order, OrderPaymentStatus, OrderStatus, ResourceStatus


@pytest.fixture
async def order(booking, add_resource):
    await add_resource()
    return await booking.create_order("res-1", "renter-1", day(1), day(3))


def test_transition_table_is_closed():
    assert can_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.ACTIVE)
    assert not can_transition(OrderStatus.COMPLETED, OrderStatus.CANCELLED)
    assert is_terminal(OrderStatus.COMPLETED)
    assert is_terminal(OrderStatus.CANCELLED)
    assert not is_terminal(OrderStatus.DISPUTED)
    assert set(ORDER_TRANSITIONS) == set(OrderStatus)


@pytest.mark.asyncio
async def test_only_owner_confirms(lifecycle, publisher, order):
    """
    Test case 1: the renter cannot confirm; the owner can, and OrderConfirmed is published.
    """
    with pytest.raises(ForbiddenError):
        await lifecycle.confirm_order(order.id, "renter-1")

    confirmed = await lifecycle.confirm_order(order.id, "owner-1")

    assert confirmed.status == OrderStatus.CONFIRMED
    assert published_keys(publisher)[-1] == "order.confirmed"


@pytest.mark.asyncio
async def test_confirm_twice_is_invalid(lifecycle, order):
    await lifecycle.confirm_order(order.id, "owner-1")

    with pytest.raises(InvalidTransition):
        await lifecycle.confirm_order(order.id, "owner-1")


@pytest.mark.asyncio
async def test_pending_cannot_jump_to_active(lifecycle, order):
    with pytest.raises(InvalidTransition):
        await lifecycle.update_order_status(order.id, "owner-1", OrderStatus.ACTIVE)

    stored = await lifecycle.get_order(order.id, "owner-1")
    assert stored.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_create_then_cancel_restores_availability(lifecycle, ledger, publisher, order):
    """
    Test case 2: cancelling the only live order returns the resource to AVAILABLE in the same commit.
    """
    assert await ledger.availability("res-1") == ResourceStatus.RENTED

    cancelled = await lifecycle.cancel_order(order.id, "renter-1", reason="changed plans")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.notes == "changed plans"
    assert await ledger.availability("res-1") == ResourceStatus.AVAILABLE
    assert published_keys(publisher) == ["order.created", "order.cancelled"]


@pytest.mark.asyncio
async def test_outsider_cannot_cancel(lifecycle, order):
    with pytest.raises(ForbiddenError):
        await lifecycle.cancel_order(order.id, "stranger")


@pytest.mark.asyncio
async def test_cancelled_order_is_final(lifecycle, order):
    await lifecycle.cancel_order(order.id, "owner-1")

    with pytest.raises(InvalidTransition):
        await lifecycle.update_order_status(order.id, "owner-1", "CONFIRMED")


@pytest.mark.asyncio
async def test_complete_requires_end_date(lifecycle, ledger, clock, order):
    """
    Test case 3: completion waits for the end date, then releases the resource.
    """
    await lifecycle.confirm_order(order.id, "owner-1")
    await lifecycle.update_order_status(order.id, "owner-1", "ACTIVE")

    with pytest.raises(OrderNotYetDue):
        await lifecycle.complete_order(order.id, "renter-1")

    clock.now = day(3)
    completed = await lifecycle.complete_order(order.id, "renter-1")

    assert completed.status == OrderStatus.COMPLETED
    assert await ledger.availability("res-1") == ResourceStatus.AVAILABLE


@pytest.mark.asyncio
async def test_complete_from_confirmed_is_invalid(lifecycle, clock, order):
    await lifecycle.confirm_order(order.id, "owner-1")
    clock.now = day(5)

    with pytest.raises(InvalidTransition):
        await lifecycle.complete_order(order.id, "owner-1")


@pytest.mark.asyncio
async def test_unknown_status_string(lifecycle, order):
    with pytest.raises(ValidationError):
        await lifecycle.update_order_status(order.id, "owner-1", "ARCHIVED")


@pytest.mark.asyncio
async def test_missing_order(lifecycle):
    with pytest.raises(OrderNotFound):
        await lifecycle.confirm_order("missing", "owner-1")


@pytest.mark.asyncio
async def test_paid_pending_order_is_confirmed(db, lifecycle, order):
    async with db.session() as session:
        async with session.begin():
            locked = await lifecycle.lock_order(session, order.id)
            events = await lifecycle.apply_payment_result(session, locked, OrderPaymentStatus.PAID)

    assert [event.routing_key for event in events] == ["order.confirmed"]
    async with db.session() as session:
        stored = await session.get(Order, order.id)
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.payment_status == OrderPaymentStatus.PAID


@pytest.mark.asyncio
async def test_payment_on_cancelled_order_only_records_payment(db, lifecycle, order):
    await lifecycle.cancel_order(order.id, "renter-1")

    async with db.session() as session:
        async with session.begin():
            locked = await lifecycle.lock_order(session, order.id)
            events = await lifecycle.apply_payment_result(session, locked, OrderPaymentStatus.PAID)

    assert events == []
    async with db.session() as session:
        stored = await session.get(Order, order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_status == OrderPaymentStatus.PAID


@pytest.mark.asyncio
async def test_get_order_is_limited_to_parties(lifecycle, order):
    assert (await lifecycle.get_order(order.id, "renter-1")).id == order.id
    assert (await lifecycle.get_order(order.id, "owner-1")).id == order.id
    with pytest.raises(ForbiddenError):
        await lifecycle.get_order(order.id, "stranger")


@pytest.mark.asyncio
async def test_list_orders_by_role_with_paging(lifecycle, booking, add_resource):
    await add_resource()
    for n in range(3):
        await booking.create_order("res-1", "renter-1", day(10 * n + 1), day(10 * n + 2))

    renter_page = await lifecycle.list_orders("renter-1", "renter", page=1, limit=2)
    owner_page = await lifecycle.list_orders("owner-1", "owner", page=2, limit=2)
    empty = await lifecycle.list_orders("renter-1", "owner")

    assert renter_page.total == 3
    assert len(renter_page.items) == 2
    assert renter_page.total_pages == 2
    assert len(owner_page.items) == 1
    assert empty.total == 0


@pytest.mark.asyncio
async def test_list_orders_filters_by_status(lifecycle, booking, add_resource):
    await add_resource()
    first = await booking.create_order("res-1", "renter-1", day(1), day(2))
    await booking.create_order("res-1", "renter-1", day(5), day(6))
    await lifecycle.cancel_order(first.id, "renter-1")

    page = await lifecycle.list_orders("renter-1", "renter", status="CANCELLED")

    assert [o.id for o in page.items] == [first.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("role,page,limit", [("admin", 1, 20), ("renter", 0, 20), ("renter", 1, 101)])
async def test_list_orders_rejects_bad_arguments(lifecycle, role, page, limit):
    with pytest.raises(ValidationError):
        await lifecycle.list_orders("renter-1", role, page=page, limit=limit)


@pytest.mark.asyncio
async def test_upcoming_orders_are_active_and_ending_soon(lifecycle, booking, add_resource):
    await add_resource()
    soon = await booking.create_order("res-1", "renter-1", day(1), day(3))
    later = await booking.create_order("res-1", "renter-1", day(20), day(25))
    for order_id in (soon.id, later.id):
        await lifecycle.confirm_order(order_id, "owner-1")
        await lifecycle.update_order_status(order_id, "owner-1", "ACTIVE")

    upcoming = await lifecycle.get_upcoming_orders("renter-1", days=7)

    assert [o.id for o in upcoming] == [soon.id]


@pytest.mark.asyncio
async def test_order_stats(lifecycle, booking, clock, add_resource):
    await add_resource(price=10000)
    done = await booking.create_order("res-1", "renter-1", day(1), day(2))
    dropped = await booking.create_order("res-1", "renter-1", day(5), day(6))
    await booking.create_order("res-1", "renter-1", day(9), day(10))
    await lifecycle.confirm_order(done.id, "owner-1")
    await lifecycle.update_order_status(done.id, "owner-1", "ACTIVE")
    clock.now = day(2)
    await lifecycle.complete_order(done.id, "owner-1")
    await lifecycle.cancel_order(dropped.id, "renter-1")

    stats = await lifecycle.get_order_stats("owner-1", "owner")

    assert stats == {
        "total_orders": 3,
        "pending_orders": 1,
        "active_orders": 0,
        "completed_orders": 1,
        "cancelled_orders": 1,
        "total_revenue": 10000,
    }


@pytest.mark.asyncio
async def test_transition_on_stale_order_version_is_a_conflict(lifecycle, publisher, order):
    """
    Test case 4: another writer commits between the read and the write; the transition is refused with 409.
    """
    real_lock = lifecycle.lock_order

    async def lock_then_concurrent_write(session, order_id):
        locked = await real_lock(session, order_id)
        await session.execute(
            update(Order.__table__).where(Order.__table__.c.id == order_id).values(version=locked.version + 1)
        )
        return locked

    with patch.object(lifecycle, "lock_order", new=lock_then_concurrent_write):
        with pytest.raises(ConflictError) as exc_info:
            await lifecycle.confirm_order(order.id, "owner-1")

    assert exc_info.value.http_status == 409
    stored = await lifecycle.get_order(order.id, "owner-1")
    assert stored.status == OrderStatus.PENDING
    assert "order.confirmed" not in published_keys(publisher)
