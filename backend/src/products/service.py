from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.alerts.engine import AlertEngine
from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import (
    DuplicateListingError,
    ExtractionFailedError,
    NotFoundError,
    PermissionDeniedError,
    ScrapeFailedError,
)
from backend.src.contracts.interfaces import IDispatcher, IScraper
from backend.src.contracts.models import (
    PriceDropEvent,
    PriceHistoryRead,
    PriceStats,
    Product,
    ProductIdentity,
    ProductRead,
    ProductSnapshot,
    ScrapeError,
    ScrapeErrorCode,
)
from backend.src.history.repository import PriceHistoryRepository
from backend.src.products.repository import ProductRepository
from backend.src.scraper.url_identifier import identify

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def namespaced_listing_id(retailer_product_id: str, user_id: uuid.UUID) -> str:
    """Listing id stored for every tracker after the first one."""
    return f"{retailer_product_id}-user-{user_id.hex}"


@dataclass(frozen=True)
class RecheckFailure:
    product_id: uuid.UUID
    error: str


class BatchCheckResult(list):
    """The products that were rechecked successfully, plus per-product failures."""

    def __init__(
        self,
        updated: Iterable[ProductRead] = (),
        failures: Iterable[RecheckFailure] = (),
    ) -> None:
        super().__init__(updated)
        self.failures: list[RecheckFailure] = list(failures)

    @property
    def checked(self) -> int:
        return len(self) + len(self.failures)


def _scrape_failure(error: ScrapeError) -> ScrapeFailedError:
    if error.code is ScrapeErrorCode.EXTRACTION_FAILED:
        return ExtractionFailedError(error)
    return ScrapeFailedError(error)


def _snapshot_from_product(product: ProductRead, url: str) -> ProductSnapshot:
    return ProductSnapshot(
        title=product.title,
        current_price=product.current_price,
        currency=product.currency,
        image_url=product.image_url or "",
        description=product.description or "",
        retailer=product.retailer,
        retailer_product_id=product.retailer_product_id,
        source_url=url,
    )


class PriceService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scraper: IScraper,
        alert_engine: AlertEngine,
        dispatcher: IDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._scraper = scraper
        self._alert_engine = alert_engine
        self._dispatcher = dispatcher
        self._settings = settings or default_settings

    # ── Add ───────────────────────────────────────────────────────────────────

    async def add_product_from_url(self, url: str, user_id: uuid.UUID) -> ProductRead:
        """Start tracking ``url`` for ``user_id``.

        Re-adding a listing the user already tracks returns the existing row.
        A listing tracked by someone else is copied into a new row for this
        user under a namespaced listing id, without scraping again. Otherwise
        the page is scraped and the first price point recorded.

        Raises InvalidUrlError for unsupported URLs and ScrapeFailedError when
        a needed scrape does not succeed (ExtractionFailedError when the page
        loaded but lacked essential fields).
        """
        identity = identify(url)
        try:
            return await self._resolve_or_create(url, user_id, identity)
        except DuplicateListingError as exc:
            # Lost an insert race; whatever won is now visible to a fresh lookup.
            logger.info(
                "duplicate_listing_race",
                retailer=exc.retailer,
                retailer_product_id=exc.retailer_product_id,
            )
            return await self._resolve_or_create(url, user_id, identity)

    async def _resolve_or_create(
        self, url: str, user_id: uuid.UUID, identity: ProductIdentity
    ) -> ProductRead:
        log = logger.bind(
            user_id=str(user_id),
            retailer=identity.retailer.value,
            retailer_product_id=identity.retailer_product_id,
        )
        natural_id = identity.retailer_product_id
        user_listing_id = namespaced_listing_id(natural_id, user_id)

        async with self._session_factory() as session:
            products = ProductRepository(session)
            for listing_id in (natural_id, user_listing_id):
                existing = await products.find_by_listing(identity.retailer, listing_id)
                if existing is not None and existing.user_id == user_id:
                    log.info("product_already_tracked", product_id=str(existing.id))
                    return existing.to_schema()
            first_tracker = await products.find_by_listing(identity.retailer, natural_id)
            source = first_tracker.to_schema() if first_tracker is not None else None

        if source is not None:
            snapshot = _snapshot_from_product(source, url)
            listing_id = user_listing_id
        else:
            result = await self._scraper.scrape(url)
            if not result.success or result.data is None:
                assert result.error is not None
                log.warning("add_product_scrape_failed", code=result.error.code.value)
                raise _scrape_failure(result.error)
            snapshot = result.data
            listing_id = natural_id

        async with self._session_factory.begin() as session:
            product = await ProductRepository(session).create(
                user_id=user_id,
                retailer_product_id=listing_id,
                snapshot=snapshot,
                url=url,
            )
            await PriceHistoryRepository(session).append(
                product.id, snapshot.current_price, snapshot.currency
            )
            created = product.to_schema()

        log.info(
            "product_added",
            product_id=str(created.id),
            price=str(created.current_price),
            reused_listing=source is not None,
        )
        return created

    # ── Recheck ───────────────────────────────────────────────────────────────

    async def recheck_price(self, product_id: uuid.UUID) -> ProductRead:
        """Scrape a product again and record the price if it moved.

        An unchanged price is a no-op: no history point, no alert evaluation.
        The product update and its history point commit together; alert
        evaluation and notifications run after the commit and never undo it.
        """
        log = logger.bind(product_id=str(product_id))

        async with self._session_factory() as session:
            product = await ProductRepository(session).get_by_id(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            current = product.to_schema()

        result = await self._scraper.scrape(current.url)
        if not result.success or result.data is None:
            assert result.error is not None
            raise _scrape_failure(result.error)
        snapshot = result.data

        if snapshot.current_price == current.current_price:
            log.info("price_unchanged", price=str(current.current_price))
            return current

        async with self._session_factory.begin() as session:
            products = ProductRepository(session)
            product = await products.get_by_id(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            old_price: Decimal = product.current_price
            if snapshot.current_price == old_price:
                return product.to_schema()
            await products.update_price(product, snapshot.current_price, snapshot.currency)
            await PriceHistoryRepository(session).append(
                product.id, snapshot.current_price, snapshot.currency, snapshot.captured_at
            )
            updated = product.to_schema()

        log.info("price_changed", old_price=str(old_price), new_price=str(updated.current_price))

        try:
            await self._alert_engine.evaluate(product_id, updated.current_price)
        except Exception as exc:
            log.error("alert_evaluation_failed", error=str(exc))

        if updated.current_price < old_price:
            event = PriceDropEvent(product=updated, old_price=old_price, new_price=updated.current_price)
            try:
                await self._dispatcher.dispatch(event)
            except Exception as exc:
                log.error("price_drop_dispatch_failed", error=str(exc))

        return updated

    async def check_prices_for_products(
        self, product_ids: list[uuid.UUID]
    ) -> BatchCheckResult:
        """Recheck many products concurrently; one failure never stops the rest."""
        semaphore = asyncio.Semaphore(self._settings.check_concurrency)

        async def _check_one(product_id: uuid.UUID) -> ProductRead | RecheckFailure:
            async with semaphore:
                try:
                    return await self.recheck_price(product_id)
                except Exception as exc:
                    logger.warning(
                        "recheck_failed",
                        product_id=str(product_id),
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    return RecheckFailure(product_id=product_id, error=str(exc))

        outcomes = await asyncio.gather(*(_check_one(pid) for pid in product_ids))
        result = BatchCheckResult(
            updated=[o for o in outcomes if isinstance(o, ProductRead)],
            failures=[o for o in outcomes if isinstance(o, RecheckFailure)],
        )
        logger.info("batch_check_complete", checked=result.checked, updated=len(result), failed=len(result.failures))
        return result

    async def get_products_due_for_check(self, limit: int) -> list[ProductRead]:
        async with self._session_factory() as session:
            products = await ProductRepository(session).get_due_for_check(limit)
        return [p.to_schema() for p in products]

    async def check_due_products(self, limit: int) -> BatchCheckResult:
        due = await self.get_products_due_for_check(limit)
        logger.info("due_products_selected", count=len(due), limit=limit)
        return await self.check_prices_for_products([p.id for p in due])

    # ── Reads and removal ─────────────────────────────────────────────────────

    @staticmethod
    async def _owned_product(
        session: AsyncSession, product_id: uuid.UUID, user_id: uuid.UUID | None
    ) -> Product:
        product = await ProductRepository(session).get_by_id(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        if user_id is not None and product.user_id != user_id:
            raise PermissionDeniedError("Product", product_id)
        return product

    async def get_product(
        self, product_id: uuid.UUID, user_id: uuid.UUID | None = None
    ) -> ProductRead:
        async with self._session_factory() as session:
            product = await self._owned_product(session, product_id, user_id)
            return product.to_schema()

    async def list_products(self, user_id: uuid.UUID) -> list[ProductRead]:
        async with self._session_factory() as session:
            products = await ProductRepository(session).list_for_user(user_id)
        return [p.to_schema() for p in products]

    async def get_price_history(
        self,
        product_id: uuid.UUID,
        limit: int | None = None,
        user_id: uuid.UUID | None = None,
    ) -> list[PriceHistoryRead]:
        async with self._session_factory() as session:
            await self._owned_product(session, product_id, user_id)
            points = await PriceHistoryRepository(session).list_for_product(product_id, limit)
        return [p.to_schema() for p in points]

    async def get_price_stats(
        self, product_id: uuid.UUID, user_id: uuid.UUID | None = None
    ) -> PriceStats:
        async with self._session_factory() as session:
            await self._owned_product(session, product_id, user_id)
            return await PriceHistoryRepository(session).stats(product_id)

    async def delete_product(self, product_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Remove a product; its history and alerts go with it."""
        async with self._session_factory.begin() as session:
            await self._owned_product(session, product_id, user_id)
            await ProductRepository(session).delete(product_id)
        logger.info("product_deleted", product_id=str(product_id), user_id=str(user_id))
