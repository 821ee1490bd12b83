import asyncio
import logging

from rental_core.config import Settings
from rental_core.database import DatabaseSessionManager
from rental_core.models import Resource, ResourceStatus
from rental_core.observability import setup_logging

logger = logging.getLogger(__name__)

SAMPLE_RESOURCES = [
    {"id": "resource-A", "owner_id": "owner-1", "price": 10000, "deposit_amount": 50000},
    {"id": "resource-B", "owner_id": "owner-1", "price": 2500, "deposit_amount": 0},
    # For testing bookings against a resource under maintenance
    {"id": "resource-C", "owner_id": "owner-2", "price": 5000, "deposit_amount": 10000,
     "status": ResourceStatus.MAINTENANCE},
]


async def seed_resources(db: DatabaseSessionManager) -> int:
    await db.create_all()
    async with db.session() as session:
        async with session.begin():
            if await session.get(Resource, SAMPLE_RESOURCES[0]["id"]):
                logger.info("Resources already seeded.")
                return 0
            session.add_all([Resource(**data) for data in SAMPLE_RESOURCES])
    logger.info(f"Seeded {len(SAMPLE_RESOURCES)} resources.")
    return len(SAMPLE_RESOURCES)


async def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    db = DatabaseSessionManager(settings.database_url)
    try:
        await seed_resources(db)
    finally:
        await db.dispose()


if __name__ == "__main__":
    asyncio.run(main())
