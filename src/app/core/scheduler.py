"""
Background scheduler
Periodically marks subscriptions past their expiry as expired
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(self, subscription_service, interval_seconds: int = 3600):
        self.subscription_service = subscription_service
        self.interval_seconds = max(1, int(interval_seconds))
        self.running = False
        self.tasks = []

    async def start(self):
        if self.running:
            return

        self.running = True
        logger.info("background scheduler started (interval=%ss)", self.interval_seconds)

        self.tasks.append(
            asyncio.create_task(self._expiry_sweep_loop())
        )

    async def stop(self):
        if not self.running:
            return

        self.running = False
        logger.info("background scheduler stopping")

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        self.tasks.clear()

    async def _expiry_sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self.running:
                    break

                await self.run_expiry_sweep()

            except asyncio.CancelledError:
                logger.info("expiry sweep cancelled")
                break
            except Exception as e:
                logger.error(f"expiry sweep error: {e}")

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> int:
        """Expire overdue subscriptions once. Credits are left untouched."""
        now = now or datetime.now(timezone.utc)
        expired = await self.subscription_service.expire_overdue(now)
        if expired > 0:
            logger.info(f"{expired} overdue subscriptions marked expired")
        return expired


scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> Optional[BackgroundScheduler]:
    return scheduler


async def initialize_scheduler(subscription_service, interval_seconds: int = 3600):
    global scheduler
    if scheduler is None:
        scheduler = BackgroundScheduler(subscription_service, interval_seconds)
        await scheduler.start()
        logger.info("background scheduler initialized")


async def cleanup_scheduler():
    global scheduler
    if scheduler:
        await scheduler.stop()
        scheduler = None
        logger.info("background scheduler cleaned up")
