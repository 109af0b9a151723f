from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import PriceHistory, PriceStats, utcnow


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PriceHistoryRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def latest_timestamp(self, product_id: uuid.UUID) -> datetime | None:
        stmt = select(func.max(PriceHistory.timestamp)).where(
            PriceHistory.product_id == product_id
        )
        result = await self._session.execute(stmt)
        latest = result.scalar_one_or_none()
        return _as_utc(latest) if latest is not None else None

    async def append(
        self,
        product_id: uuid.UUID,
        price: Decimal,
        currency: str,
        timestamp: datetime | None = None,
    ) -> PriceHistory:
        """Append a price point, never earlier than the product's latest one."""
        when = _as_utc(timestamp or utcnow())
        latest = await self.latest_timestamp(product_id)
        if latest is not None and when < latest:
            when = latest

        point = PriceHistory(
            id=uuid.uuid4(),
            product_id=product_id,
            price=price,
            currency=currency,
            timestamp=when,
        )
        self._session.add(point)
        await self._session.flush()
        return point

    async def list_for_product(
        self, product_id: uuid.UUID, limit: int | None = None
    ) -> list[PriceHistory]:
        """Newest first."""
        stmt = (
            select(PriceHistory)
            .where(PriceHistory.product_id == product_id)
            .order_by(PriceHistory.timestamp.desc(), PriceHistory.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_product(self, product_id: uuid.UUID) -> int:
        stmt = select(func.count(PriceHistory.id)).where(PriceHistory.product_id == product_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def stats(self, product_id: uuid.UUID) -> PriceStats:
        stmt = select(
            func.min(PriceHistory.price),
            func.max(PriceHistory.price),
            func.avg(PriceHistory.price),
            func.count(PriceHistory.id),
        ).where(PriceHistory.product_id == product_id)
        result = await self._session.execute(stmt)
        lowest, highest, average, count = result.one()
        if not count:
            return PriceStats()
        return PriceStats(
            lowest=Decimal(str(lowest)),
            highest=Decimal(str(highest)),
            average=Decimal(str(average)).quantize(Decimal("0.01")),
            count=count,
        )
