from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.interfaces import IChannelBroker, INotifier
from backend.src.contracts.models import (
    NotificationEvent,
    UserRead,
    product_channel,
    user_channel,
)
from backend.src.users.repository import UserRepository

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Fans a notification event out to live subscribers and to the notifiers.

    The realtime leg publishes to ``user:<id>`` and ``product:<id>`` before
    ``dispatch`` returns. Notifier delivery (email) runs in background tasks
    so callers never wait on it; its failures are logged and dropped.
    """

    def __init__(
        self,
        broker: IChannelBroker,
        session_factory: async_sessionmaker[AsyncSession],
        notifiers: Sequence[INotifier] = (),
    ) -> None:
        self._broker = broker
        self._session_factory = session_factory
        self._notifiers = list(notifiers)
        self._tasks: set[asyncio.Task[dict[str, bool]]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(self, event: NotificationEvent) -> None:
        log = logger.bind(
            event_type=event.type.value,
            user_id=str(event.user_id),
            product_id=str(event.product_id),
        )
        message = event.model_dump(mode="json")

        for channel in (user_channel(event.user_id), product_channel(event.product_id)):
            try:
                delivered = await self._broker.publish(channel, message)
                log.debug("realtime_published", channel=channel, subscribers=delivered)
            except Exception as exc:
                log.warning("realtime_publish_failed", channel=channel, error=str(exc))

        if self._notifiers:
            task = asyncio.create_task(self._deliver(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _load_user(self, user_id: uuid.UUID) -> UserRead | None:
        async with self._session_factory() as session:
            user = await UserRepository(session).get_by_id(user_id)
            return user.to_schema() if user is not None else None

    async def _deliver(self, event: NotificationEvent) -> dict[str, bool]:
        log = logger.bind(event_type=event.type.value, user_id=str(event.user_id))
        try:
            user = await self._load_user(event.user_id)
        except Exception as exc:
            log.error("notify_user_lookup_failed", error=str(exc))
            return {}
        if user is None:
            log.warning("notify_user_missing")
            return {}

        results: dict[str, bool] = {}
        for notifier in self._notifiers:
            channel = type(notifier).__name__
            try:
                results[channel] = await notifier.send(event, user)
            except Exception as exc:  # noqa: BLE001
                log.error("notify_channel_error", channel=channel, error=str(exc))
                results[channel] = False

        log.info("notify_complete", results=results)
        return results

    async def drain(self) -> None:
        """Wait for every background delivery started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
