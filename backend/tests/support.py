from __future__ import annotations

from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.models import (
    NotificationEvent,
    ProductSnapshot,
    ScrapeErrorCode,
    ScrapeOptions,
    ScrapeResult,
    UserRead,
)
from backend.src.scraper.url_identifier import identify
from backend.src.users.repository import UserRepository


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    email: str = "shopper@example.com",
) -> UserRead:
    async with session_factory.begin() as session:
        user = await UserRepository(session).create(email)
        return user.to_schema()


def make_snapshot(url: str, price: str | Decimal, title: str = "Sony WH-1000XM4 Headphones") -> ProductSnapshot:
    identity = identify(url)
    return ProductSnapshot(
        title=title,
        current_price=Decimal(price),
        retailer=identity.retailer,
        retailer_product_id=identity.retailer_product_id,
        source_url=url,
    )


class FakeScraper:
    """Scripted IScraper: a price, failure or exception per URL."""

    def __init__(self) -> None:
        self.prices: dict[str, Decimal] = {}
        self.errors: dict[str, Exception] = {}
        self.failures: dict[str, ScrapeErrorCode] = {}
        self.calls: list[str] = []

    def set_price(self, url: str, price: str) -> None:
        self.prices[url] = Decimal(price)

    async def scrape(self, url: str, options: ScrapeOptions | None = None) -> ScrapeResult:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url in self.failures:
            code = self.failures[url]
            if code is ScrapeErrorCode.EXTRACTION_FAILED:
                return ScrapeResult.fail(
                    code, "scripted failure", details={"missing_fields": ["current_price"]}
                )
            return ScrapeResult.fail(code, "scripted failure", retryable=True)
        return ScrapeResult.ok(make_snapshot(url, self.prices[url]))


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)
