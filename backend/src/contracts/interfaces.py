from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from backend.src.contracts.models import (
    NotificationEvent,
    ScrapeOptions,
    ScrapeResult,
    UserRead,
)


class IRetailerStrategy(Protocol):
    async def extract(self, url: str, options: ScrapeOptions) -> ScrapeResult: ...


class IScraper(Protocol):
    async def scrape(self, url: str, options: ScrapeOptions | None = None) -> ScrapeResult: ...


class IRenderer(Protocol):
    async def render(
        self,
        url: str,
        options: ScrapeOptions,
        wait_selectors: list[str],
    ) -> str: ...


class IChannelBroker(Protocol):
    async def publish(self, channel: str, message: dict[str, Any]) -> int: ...

    def subscribe(
        self, *channels: str
    ) -> AbstractAsyncContextManager[AsyncIterator[dict[str, Any]]]: ...

    async def close(self) -> None: ...


class INotifier(Protocol):
    async def send(self, event: NotificationEvent, user: UserRead) -> bool: ...


class IDispatcher(Protocol):
    async def dispatch(self, event: NotificationEvent) -> None: ...
