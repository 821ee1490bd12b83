import asyncio
import logging

from rental_core.ledger import ResourceLedger
from rental_core.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


class Housekeeper:
    """Periodic safety nets: orphaned resource holds and dead-lettered callbacks."""

    def __init__(self, ledger: ResourceLedger, reconciler: WebhookReconciler, interval_seconds: int = 300):
        self._ledger = ledger
        self._reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def run_once(self) -> dict:
        released = await self._ledger.reconcile()
        replayed = await self._reconciler.replay_dead_letters()
        return {"released_resources": released, "replayed_callbacks": replayed}

    async def run_forever(self):
        logger.info(f"Housekeeping running every {self.interval_seconds}s")
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Housekeeping pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Housekeeping stopped.")
