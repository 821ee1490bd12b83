"""Resource availability ledger.

The only writer of ``Resource.status``. ``hold`` and ``release`` never open
their own transaction: they run on the session of the order transition that
justifies the change, so both writes commit or roll back together.
"""

import logging

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_core.database import DatabaseSessionManager
from rental_core.errors import ResourceNotFound
from rental_core.models import LIVE_ORDER_STATUSES, Order, Resource, ResourceStatus, utcnow

logger = logging.getLogger(__name__)


class ResourceLedger:

    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def lock(self, session: AsyncSession, resource_id: str) -> Resource:
        result = await session.execute(
            select(Resource).where(Resource.id == resource_id).with_for_update()
        )
        resource = result.scalar_one_or_none()
        if resource is None:
            raise ResourceNotFound(resource_id)
        return resource

    def hold(self, resource: Resource):
        """Mark the resource RENTED; also bumps its version so a racing booking fails at commit."""
        resource.status = ResourceStatus.RENTED
        resource.updated_at = utcnow()
        logger.info(f"Resource {resource.id} held", extra={"resource_id": resource.id})

    async def release(self, session: AsyncSession, resource_id: str, exclude_order_id: str | None = None) -> bool:
        """Return a RENTED resource to AVAILABLE unless another live order still holds it."""
        resource = await self.lock(session, resource_id)
        if resource.status != ResourceStatus.RENTED:
            return False
        if await self._has_live_order(session, resource_id, exclude_order_id):
            logger.info(
                f"Resource {resource_id} kept RENTED, other live orders remain",
                extra={"resource_id": resource_id},
            )
            return False
        resource.status = ResourceStatus.AVAILABLE
        logger.info(f"Resource {resource_id} released", extra={"resource_id": resource_id})
        return True

    async def availability(self, resource_id: str) -> ResourceStatus:
        async with self._db.session() as session:
            resource = await session.get(Resource, resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
            return resource.status

    async def reconcile(self) -> list[str]:
        """Revert RENTED resources that no live order justifies. Returns the released ids."""
        live_order = (
            exists()
            .where(Order.resource_id == Resource.id)
            .where(Order.status.in_(LIVE_ORDER_STATUSES))
        )
        released = []
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Resource)
                    .where(Resource.status == ResourceStatus.RENTED)
                    .where(~live_order)
                    .with_for_update(skip_locked=True)
                )
                for resource in result.scalars().all():
                    resource.status = ResourceStatus.AVAILABLE
                    released.append(resource.id)
        if released:
            logger.warning(f"Ledger sweep released orphaned holds: {released}")
        return released

    @staticmethod
    async def _has_live_order(session: AsyncSession, resource_id: str, exclude_order_id: str | None) -> bool:
        query = select(Order.id).where(
            Order.resource_id == resource_id,
            Order.status.in_(LIVE_ORDER_STATUSES),
        )
        if exclude_order_id is not None:
            query = query.where(Order.id != exclude_order_id)
        result = await session.execute(query.limit(1))
        return result.first() is not None
