from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import User, utcnow


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        return await self._session.get(User, user_id)

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, email: str, name: str | None = None) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email,
            name=name,
            email_notifications=True,
            price_drop_alerts=True,
            created_at=utcnow(),
        )
        self._session.add(user)
        await self._session.flush()
        return user

    async def update_notification_preferences(
        self,
        user_id: uuid.UUID,
        *,
        email_notifications: bool | None = None,
        price_drop_alerts: bool | None = None,
    ) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        if email_notifications is not None:
            user.email_notifications = email_notifications
        if price_drop_alerts is not None:
            user.price_drop_alerts = price_drop_alerts
        await self._session.flush()
        return user
