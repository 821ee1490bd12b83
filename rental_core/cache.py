"""Read-through cache for payment snapshots.

The ``payments`` table is authoritative. Entries here only accelerate reads:
they are dropped on every write and may expire at any time. A cache outage
degrades to database reads and never fails a payment operation.
"""

import json
import logging

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

PAYMENT_KEY = "payment:"


class PaymentCache:

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 3600):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 3600) -> "PaymentCache":
        return cls(aioredis.from_url(redis_url, decode_responses=True), ttl_seconds)

    async def get(self, payment_id: str) -> dict | None:
        try:
            raw = await self._client.get(f"{PAYMENT_KEY}{payment_id}")
        except Exception as e:
            logger.warning(f"Payment cache read failed: {e}", extra={"payment_id": payment_id})
            return None
        return json.loads(raw) if raw else None

    async def set(self, payment_id: str, snapshot: dict):
        try:
            await self._client.set(f"{PAYMENT_KEY}{payment_id}", json.dumps(snapshot), ex=self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Payment cache write failed: {e}", extra={"payment_id": payment_id})

    async def invalidate(self, payment_id: str):
        try:
            await self._client.delete(f"{PAYMENT_KEY}{payment_id}")
        except Exception as e:
            logger.warning(f"Payment cache invalidation failed: {e}", extra={"payment_id": payment_id})

    async def close(self):
        await self._client.aclose()
