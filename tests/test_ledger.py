import pytest

from conftest import day
from rental_core.errors import ResourceNotFound
from rental_core.models import Order, OrderStatus, Resource, ResourceStatus


@pytest.mark.asyncio
async def test_hold_marks_resource_rented(db, ledger, add_resource):
    """
    Test case 1: hold() flips the flag on the locked row inside the caller's transaction.
    """
    await add_resource()

    async with db.session() as session:
        async with session.begin():
            resource = await ledger.lock(session, "res-1")
            ledger.hold(resource)

    assert await ledger.availability("res-1") == ResourceStatus.RENTED


@pytest.mark.asyncio
async def test_lock_unknown_resource(db, ledger):
    async with db.session() as session:
        with pytest.raises(ResourceNotFound):
            await ledger.lock(session, "missing")


@pytest.mark.asyncio
async def test_availability_unknown_resource(ledger):
    with pytest.raises(ResourceNotFound):
        await ledger.availability("missing")


@pytest.mark.asyncio
async def test_release_keeps_hold_while_other_live_orders_remain(db, ledger, booking, add_resource):
    """
    Test case 2: releasing for one order leaves the resource RENTED when another live order exists.
    """
    await add_resource()
    first = await booking.create_order("res-1", "renter-1", day(1), day(3))
    second = await booking.create_order("res-1", "renter-2", day(10), day(12))

    async with db.session() as session:
        async with session.begin():
            released = await ledger.release(session, "res-1", exclude_order_id=first.id)

    assert released is False
    assert await ledger.availability("res-1") == ResourceStatus.RENTED

    async with db.session() as session:
        async with session.begin():
            for order_id in (first.id, second.id):
                order = await session.get(Order, order_id)
                order.status = OrderStatus.CANCELLED
            released = await ledger.release(session, "res-1")

    assert released is True
    assert await ledger.availability("res-1") == ResourceStatus.AVAILABLE


@pytest.mark.asyncio
async def test_release_never_overrides_maintenance(db, ledger, add_resource):
    await add_resource(status=ResourceStatus.MAINTENANCE)

    async with db.session() as session:
        async with session.begin():
            assert await ledger.release(session, "res-1") is False

    assert await ledger.availability("res-1") == ResourceStatus.MAINTENANCE


@pytest.mark.asyncio
async def test_reconcile_releases_orphaned_holds(db, ledger, booking, add_resource):
    """
    Test case 3: the sweep reverts RENTED resources with no live order and leaves justified holds alone.
    """
    await add_resource("res-orphan")
    await add_resource("res-booked")
    async with db.session() as session:
        async with session.begin():
            orphan = await session.get(Resource, "res-orphan")
            orphan.status = ResourceStatus.RENTED
    await booking.create_order("res-booked", "renter-1", day(1), day(2))

    released = await ledger.reconcile()

    assert released == ["res-orphan"]
    assert await ledger.availability("res-orphan") == ResourceStatus.AVAILABLE
    assert await ledger.availability("res-booked") == ResourceStatus.RENTED
