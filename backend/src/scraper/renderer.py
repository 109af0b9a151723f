from __future__ import annotations

import asyncio

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import NetworkError, RenderError
from backend.src.contracts.models import ScrapeOptions

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class PlaywrightRenderer:
    """Headless Chromium renderer; one browser per call, always closed on exit."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings

    def _launch_kwargs(self, options: ScrapeOptions) -> dict:
        kwargs: dict = {"headless": self._settings.render_headless}
        if options.use_proxy and self._settings.scrape_proxy_url:
            kwargs["proxy"] = {"server": self._settings.scrape_proxy_url}
        return kwargs

    async def _settle(self, page: Page, wait_selectors: list[str]) -> str | None:
        """Race the known-good selectors against the grace timeout.

        Returns the first selector to appear, or None when the grace period ran
        out first. Either way the page content is read afterwards.
        """
        if not wait_selectors:
            return None

        grace_seconds = self._settings.render_grace_ms / 1000
        tasks = {
            asyncio.create_task(
                page.wait_for_selector(selector, timeout=self._settings.render_grace_ms)
            ): selector
            for selector in wait_selectors
        }
        pending = set(tasks)
        matched: str | None = None
        try:
            while pending and matched is None:
                done, pending = await asyncio.wait(
                    pending, timeout=grace_seconds, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                for task in done:
                    if not task.cancelled() and task.exception() is None:
                        matched = tasks[task]
                        break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return matched

    async def render(self, url: str, options: ScrapeOptions, wait_selectors: list[str]) -> str:
        log = logger.bind(url=url)
        log.info("render_start")
        try:
            async with async_playwright() as pw:
                browser = await pw.chromium.launch(**self._launch_kwargs(options))
                try:
                    context = await browser.new_context(
                        user_agent=options.effective_user_agent,
                        viewport={"width": 1280, "height": 800},
                        locale="en-US",
                    )
                    page = await context.new_page()
                    try:
                        response = await page.goto(
                            url, wait_until="domcontentloaded", timeout=options.timeout_ms
                        )
                    except PlaywrightTimeoutError as exc:
                        raise NetworkError(f"Timed out loading {url} in browser") from exc
                    except PlaywrightError as exc:
                        if "net::" in str(exc):
                            raise NetworkError(f"Browser navigation to {url} failed: {exc}") from exc
                        raise
                    if response is not None and response.status >= 400:
                        raise NetworkError(
                            f"HTTP {response.status} loading {url} in browser", response.status
                        )

                    matched = await self._settle(page, wait_selectors)
                    html = await page.content()
                    log.info("render_complete", matched_selector=matched, bytes=len(html))
                    return html
                finally:
                    await browser.close()
        except NetworkError:
            raise
        except Exception as exc:
            log.error("render_failed", error=str(exc))
            raise RenderError(f"Headless render failed for {url}: {exc}") from exc
