from __future__ import annotations

import asyncio

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from backend.src.config import Settings
from backend.src.products.service import BatchCheckResult, PriceService

logger = structlog.get_logger(__name__)


class PriceCheckScheduler:
    """Runs the batch recheck on a timer: a small hourly sweep and a full daily one.

    Only one batch runs at a time; a tick that arrives while a batch is still
    running is skipped. Shutdown waits for the running batch instead of
    cancelling it, so no headless browser is left behind.
    """

    def __init__(self, price_service: PriceService, settings: Settings) -> None:
        self._scheduler = AsyncIOScheduler()
        self._price_service = price_service
        self._settings = settings
        self._lock = asyncio.Lock()
        self._current: asyncio.Task[BatchCheckResult | None] | None = None

    def start(self) -> None:
        self._scheduler.add_job(
            self._run_batch,
            trigger=IntervalTrigger(hours=1),
            args=[self._settings.hourly_check_limit, "hourly"],
            id="hourly_price_check",
            name="Recheck least recently updated products",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._run_batch,
            trigger=CronTrigger(hour=3, minute=0),
            args=[self._settings.daily_check_limit, "daily"],
            id="daily_price_check",
            name="Recheck every tracked product",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            hourly_limit=self._settings.hourly_check_limit,
            daily_limit=self._settings.daily_check_limit,
        )

    async def stop(self) -> None:
        self._scheduler.shutdown(wait=False)
        if self._current is not None and not self._current.done():
            logger.info("scheduler_waiting_for_batch")
            await asyncio.shield(self._current)
        logger.info("scheduler_shutdown")

    async def trigger_now(self, limit: int | None = None) -> BatchCheckResult | None:
        """Run a batch immediately (admin endpoints and tests)."""
        return await self._run_batch(limit or self._settings.hourly_check_limit, "manual")

    async def _run_batch(self, limit: int, kind: str) -> BatchCheckResult | None:
        log = logger.bind(kind=kind, limit=limit)
        if self._lock.locked():
            log.info("price_check_skipped_busy")
            return None

        async with self._lock:
            log.info("price_check_start")
            self._current = asyncio.create_task(self._price_service.check_due_products(limit))
            try:
                result = await asyncio.shield(self._current)
            except Exception:
                log.error("price_check_error", exc_info=True)
                return None
            finally:
                if self._current.done():
                    self._current = None

        log.info(
            "price_check_complete",
            updated=len(result),
            failed=len(result.failures),
        )
        return result
