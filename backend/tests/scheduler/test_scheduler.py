from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.src.config import Settings
from backend.src.products.service import BatchCheckResult, RecheckFailure
from backend.src.scheduler.scheduler import PriceCheckScheduler


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        hourly_check_limit=25,
        daily_check_limit=500,
    )


def _service(result: BatchCheckResult | None = None) -> MagicMock:
    service = MagicMock()
    service.check_due_products = AsyncMock(return_value=result or BatchCheckResult())
    return service


class TestPriceCheckScheduler:
    @pytest.mark.asyncio
    async def test_trigger_now_uses_hourly_limit(self, settings: Settings) -> None:
        failure = RecheckFailure(product_id=uuid.uuid4(), error="blocked")
        service = _service(BatchCheckResult(failures=[failure]))
        scheduler = PriceCheckScheduler(service, settings)

        result = await scheduler.trigger_now()

        service.check_due_products.assert_awaited_once_with(25)
        assert result is not None
        assert result.failures == [failure]

    @pytest.mark.asyncio
    async def test_trigger_now_with_explicit_limit(self, settings: Settings) -> None:
        service = _service()
        scheduler = PriceCheckScheduler(service, settings)

        await scheduler.trigger_now(limit=3)

        service.check_due_products.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, settings: Settings) -> None:
        release = asyncio.Event()

        async def _slow_batch(limit: int) -> BatchCheckResult:
            await release.wait()
            return BatchCheckResult()

        service = MagicMock()
        service.check_due_products = AsyncMock(side_effect=_slow_batch)
        scheduler = PriceCheckScheduler(service, settings)

        first = asyncio.create_task(scheduler.trigger_now())
        await asyncio.sleep(0)
        second = await scheduler.trigger_now()
        release.set()
        first_result = await first

        assert second is None
        assert first_result is not None
        service.check_due_products.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_batch_error_is_logged_not_raised(self, settings: Settings) -> None:
        service = MagicMock()
        service.check_due_products = AsyncMock(side_effect=RuntimeError("db gone"))
        scheduler = PriceCheckScheduler(service, settings)

        assert await scheduler.trigger_now() is None
        # The lock is free again for the next tick.
        service.check_due_products = AsyncMock(return_value=BatchCheckResult())
        assert await scheduler.trigger_now() is not None

    @pytest.mark.asyncio
    async def test_start_registers_both_jobs(self, settings: Settings) -> None:
        scheduler = PriceCheckScheduler(_service(), settings)

        scheduler.start()
        try:
            jobs = {job.id: job for job in scheduler._scheduler.get_jobs()}
        finally:
            await scheduler.stop()

        assert set(jobs) == {"hourly_price_check", "daily_price_check"}
        assert jobs["hourly_price_check"].args == (25, "hourly")
        assert jobs["daily_price_check"].args == (500, "daily")

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_batch(self, settings: Settings) -> None:
        release = asyncio.Event()
        finished: list[bool] = []

        async def _slow_batch(limit: int) -> BatchCheckResult:
            await release.wait()
            finished.append(True)
            return BatchCheckResult()

        service = MagicMock()
        service.check_due_products = AsyncMock(side_effect=_slow_batch)
        scheduler = PriceCheckScheduler(service, settings)
        scheduler.start()

        running = asyncio.create_task(scheduler.trigger_now())
        await asyncio.sleep(0)
        asyncio.get_running_loop().call_later(0.01, release.set)
        await scheduler.stop()

        assert finished == [True]
        await running
