from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
import structlog

from backend.src.config import Settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class InMemoryBroker:
    """Single-process pub/sub over bounded asyncio queues.

    Delivery is best effort: a subscriber whose queue is full misses the
    message rather than slowing the publisher down.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("realtime_subscriber_lagging", channel=channel)
        return delivered

    @asynccontextmanager
    async def subscribe(self, *channels: str) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        for channel in channels:
            self._subscribers[channel].add(queue)

        async def _messages() -> AsyncIterator[dict[str, Any]]:
            while True:
                yield await queue.get()

        try:
            yield _messages()
        finally:
            for channel in channels:
                subscribers = self._subscribers.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBroker:
    """Pub/sub across processes through Redis channels, JSON payloads."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisBroker:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        return int(await self._client.publish(channel, json.dumps(message, default=str)))

    @asynccontextmanager
    async def subscribe(self, *channels: str) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(*channels)

        async def _messages() -> AsyncIterator[dict[str, Any]]:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    yield json.loads(raw["data"])
                except (TypeError, ValueError):
                    logger.warning("realtime_bad_payload", channel=raw.get("channel"))

        try:
            yield _messages()
        finally:
            await pubsub.unsubscribe(*channels)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._client.aclose()


def build_broker(settings: Settings) -> InMemoryBroker | RedisBroker:
    if settings.realtime_backend == "redis":
        logger.info("realtime_backend_selected", backend="redis")
        return RedisBroker.from_url(settings.redis_url)
    logger.info("realtime_backend_selected", backend="memory")
    return InMemoryBroker(queue_size=settings.realtime_queue_size)
