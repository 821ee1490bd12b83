"""Service wiring.

Each service is built once per process and handed to its collaborators
explicitly; the FastAPI app keeps the container on ``app.state``.
"""

import logging
from dataclasses import dataclass

import httpx

from rental_core.booking import BookingConflictResolver
from rental_core.cache import PaymentCache
from rental_core.config import Settings
from rental_core.database import DatabaseSessionManager
from rental_core.housekeeping import Housekeeper
from rental_core.ledger import ResourceLedger
from rental_core.lifecycle import OrderLifecycle
from rental_core.messaging import EventPublisher
from rental_core.payments import PaymentService
from rental_core.providers import ProviderRegistry, build_registry
from rental_core.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: DatabaseSessionManager
    publisher: EventPublisher
    registry: ProviderRegistry
    cache: PaymentCache | None
    ledger: ResourceLedger
    booking: BookingConflictResolver
    lifecycle: OrderLifecycle
    payments: PaymentService
    webhooks: WebhookReconciler
    housekeeper: Housekeeper

    async def start(self):
        await self.publisher.connect()
        self.housekeeper.start()

    async def close(self):
        await self.housekeeper.stop()
        await self.publisher.close()
        await self.registry.close()
        if self.cache is not None:
            await self.cache.close()
        await self.db.dispose()


def build_services(
    settings: Settings,
    db: DatabaseSessionManager | None = None,
    publisher: EventPublisher | None = None,
    http_client: httpx.AsyncClient | None = None,
    cache: PaymentCache | None = None,
) -> Services:
    if db is None:
        engine_kwargs = {}
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs = {
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
            }
        db = DatabaseSessionManager(settings.database_url, **engine_kwargs)
    publisher = publisher or EventPublisher(settings.rabbitmq_url)
    if cache is None and settings.redis_url:
        cache = PaymentCache.from_url(settings.redis_url, settings.payment_cache_ttl)

    registry = build_registry(settings, http_client)
    ledger = ResourceLedger(db)
    booking = BookingConflictResolver(db, ledger, publisher, delivery_fee=settings.delivery_fee)
    lifecycle = OrderLifecycle(db, ledger, publisher)
    payments = PaymentService(
        db, registry, lifecycle, publisher, cache=cache, max_amount=settings.max_payment_amount,
    )
    webhooks = WebhookReconciler(
        db, payments, registry,
        allow_simulation=not settings.is_production,
        max_replay_attempts=settings.webhook_max_replay_attempts,
    )
    housekeeper = Housekeeper(ledger, webhooks, settings.housekeeping_interval_seconds)

    logger.info(f"Services built for {settings.environment} environment")
    return Services(
        settings=settings,
        db=db,
        publisher=publisher,
        registry=registry,
        cache=cache,
        ledger=ledger,
        booking=booking,
        lifecycle=lifecycle,
        payments=payments,
        webhooks=webhooks,
        housekeeper=housekeeper,
    )
