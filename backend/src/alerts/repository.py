from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import Alert, utcnow


class AlertRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, alert_id: uuid.UUID) -> Alert | None:
        return await self._session.get(Alert, alert_id)

    async def create(
        self, *, product_id: uuid.UUID, user_id: uuid.UUID, target_price: Decimal
    ) -> Alert:
        now = utcnow()
        alert = Alert(
            id=uuid.uuid4(),
            product_id=product_id,
            user_id=user_id,
            target_price=target_price,
            is_triggered=False,
            created_at=now,
            updated_at=now,
        )
        self._session.add(alert)
        await self._session.flush()
        return alert

    async def update_target(self, alert: Alert, target_price: Decimal) -> Alert:
        alert.target_price = target_price
        alert.updated_at = utcnow()
        await self._session.flush()
        return alert

    async def delete(self, alert_id: uuid.UUID) -> bool:
        result = await self._session.execute(delete(Alert).where(Alert.id == alert_id))
        return result.rowcount > 0

    async def list_for_user(self, user_id: uuid.UUID) -> list[Alert]:
        stmt = select(Alert).where(Alert.user_id == user_id).order_by(Alert.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_product(self, product_id: uuid.UUID) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.product_id == product_id)
            .order_by(Alert.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_to_trigger(self, product_id: uuid.UUID, price: Decimal) -> list[Alert]:
        """Armed alerts whose target is at or above ``price``."""
        stmt = select(Alert).where(
            Alert.product_id == product_id,
            Alert.is_triggered.is_(False),
            Alert.target_price >= price,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_triggered(self, alert_id: uuid.UUID, at: datetime | None = None) -> bool:
        """Flip an armed alert to triggered.

        The update is conditional on ``is_triggered = false`` so two concurrent
        evaluations cannot both claim the same alert; only the caller that sees
        True owns the notification. ``at`` becomes the new ``updated_at``.
        """
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.is_triggered.is_(False))
            .values(is_triggered=True, updated_at=at or utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def reset(self, alert: Alert) -> Alert:
        alert.is_triggered = False
        alert.updated_at = utcnow()
        await self._session.flush()
        return alert
