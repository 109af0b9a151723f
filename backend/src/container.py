from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.alerts.engine import AlertEngine
from backend.src.config import Settings
from backend.src.contracts.interfaces import IChannelBroker, INotifier, IScraper
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.email_notifier import EmailNotifier
from backend.src.products.service import PriceService
from backend.src.realtime.broker import build_broker
from backend.src.scraper.orchestrator import ScraperOrchestrator


@dataclass
class Services:
    settings: Settings
    scraper: IScraper
    broker: IChannelBroker
    dispatcher: NotificationDispatcher
    alert_engine: AlertEngine
    price_service: PriceService

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        await self.broker.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    scraper: IScraper | None = None,
    broker: IChannelBroker | None = None,
    notifiers: list[INotifier] | None = None,
) -> Services:
    """Wire the price-monitoring pipeline; any collaborator can be swapped in."""
    scraper = scraper or ScraperOrchestrator(settings=settings)
    broker = broker or build_broker(settings)
    if notifiers is None:
        notifiers = [EmailNotifier(settings)]
    dispatcher = NotificationDispatcher(broker, session_factory, notifiers)
    alert_engine = AlertEngine(session_factory, dispatcher)
    price_service = PriceService(
        session_factory, scraper, alert_engine, dispatcher, settings=settings
    )
    return Services(
        settings=settings,
        scraper=scraper,
        broker=broker,
        dispatcher=dispatcher,
        alert_engine=alert_engine,
        price_service=price_service,
    )
