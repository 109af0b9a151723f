from __future__ import annotations

import asyncio
import time

import structlog

from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import InvalidUrlError
from backend.src.contracts.interfaces import IRenderer, IRetailerStrategy
from backend.src.contracts.models import (
    Retailer,
    ScrapeErrorCode,
    ScrapeOptions,
    ScrapeResult,
)
from backend.src.scraper.base import USER_AGENT_POOL
from backend.src.scraper.renderer import PlaywrightRenderer
from backend.src.scraper.retailers import AmazonStrategy, BestBuyStrategy, WalmartStrategy
from backend.src.scraper.url_identifier import identify

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def build_strategies(
    renderer: IRenderer | None, settings: Settings
) -> dict[Retailer, IRetailerStrategy]:
    return {
        Retailer.AMAZON: AmazonStrategy(renderer, settings),
        Retailer.WALMART: WalmartStrategy(renderer, settings),
        Retailer.BESTBUY: BestBuyStrategy(renderer, settings),
    }


class ScraperOrchestrator:
    """Routes a URL to its retailer strategy and applies the retry policy.

    ``max_retries`` counts attempts after the first one. Only failures marked
    ``retryable`` (network-class) are retried, with ``backoff_base ** attempt``
    seconds between attempts. When the caller did not pin a User-Agent, each
    retry rotates to the next UA in the pool.
    """

    def __init__(
        self,
        strategies: dict[Retailer, IRetailerStrategy] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._strategies = strategies or build_strategies(
            PlaywrightRenderer(self._settings), self._settings
        )

    def default_options(self) -> ScrapeOptions:
        return ScrapeOptions.from_settings(self._settings)

    def _options_for_attempt(self, options: ScrapeOptions, attempt: int) -> ScrapeOptions:
        if options.user_agent is not None:
            return options
        if attempt == 1:
            user_agent = self._settings.scrape_user_agent
        else:
            user_agent = USER_AGENT_POOL[(attempt - 1) % len(USER_AGENT_POOL)]
        return options.model_copy(update={"user_agent": user_agent})

    async def scrape(self, url: str, options: ScrapeOptions | None = None) -> ScrapeResult:
        start = time.monotonic()
        options = options or self.default_options()
        log = logger.bind(url=url)

        try:
            identity = identify(url)
        except InvalidUrlError as exc:
            log.info("scrape_invalid_url", reason=exc.reason)
            result = ScrapeResult.fail(
                ScrapeErrorCode.INVALID_URL,
                exc.reason,
                details={"url": url},
            )
            return self._finish(result, start, attempts=0)

        strategy = self._strategies[identity.retailer]
        log = log.bind(retailer=identity.retailer.value, product_id=identity.retailer_product_id)

        total_attempts = options.max_retries + 1
        result: ScrapeResult | None = None
        attempt = 0
        for attempt in range(1, total_attempts + 1):
            result = await strategy.extract(url, self._options_for_attempt(options, attempt))
            if result.success or result.error is None or not result.error.retryable:
                break
            if attempt < total_attempts:
                backoff = self._settings.scrape_backoff_base_seconds ** attempt
                log.warning(
                    "fetch_retry",
                    attempt=attempt,
                    code=result.error.code.value,
                    error=result.error.message,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)

        assert result is not None
        result = self._finish(result, start, attempts=attempt)
        if result.success:
            log.info("scrape_complete", attempts=attempt, response_time_ms=result.response_time_ms)
        else:
            assert result.error is not None
            log.warning(
                "scrape_failed",
                attempts=attempt,
                code=result.error.code.value,
                response_time_ms=result.response_time_ms,
            )
        return result

    @staticmethod
    def _finish(result: ScrapeResult, start: float, attempts: int) -> ScrapeResult:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return result.model_copy(update={"response_time_ms": elapsed_ms, "attempts": attempts})
