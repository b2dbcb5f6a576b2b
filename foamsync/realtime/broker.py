"""Pub/sub brokers for row-change events and crew broadcasts.

Two channels per organization:

- ``org:{org_id}``: one message per committed row change, carrying only
  the table name and operation. Receivers refetch what they need.
- ``crew-updates:{org_id}``: ``work_order_update`` broadcast sent by the
  admin after a full push so crew sessions refresh their job list.

Delivery is best effort. A failing subscriber is logged and skipped; a
failing publish never breaks the write that triggered it.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as redis

from foamsync.config import RealtimeConfig
from foamsync.models import ChangeEvent, utcnow

logger = logging.getLogger(__name__)

Message = dict[str, Any]
Handler = Callable[[Message], Awaitable[None] | None]
Unsubscribe = Callable[[], Awaitable[None]]

WORK_ORDER_UPDATE = "work_order_update"


def org_channel(org_id: str) -> str:
    return f"org:{org_id}"


def crew_channel(org_id: str) -> str:
    return f"crew-updates:{org_id}"


async def _dispatch(handler: Handler, channel: str, message: Message) -> None:
    try:
        outcome = handler(message)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.error(f"Subscriber on {channel} failed: {e}")


class Broker(Protocol):
    async def publish(self, channel: str, message: Message) -> None: ...

    async def subscribe(self, channel: str, handler: Handler) -> Unsubscribe: ...

    async def close(self) -> None: ...


class MemoryBroker:
    """In-process broker for a single server process and for tests."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.published: list[tuple[str, Message]] = []

    async def publish(self, channel: str, message: Message) -> None:
        self.published.append((channel, message))
        for handler in list(self._handlers.get(channel, ())):
            await _dispatch(handler, channel, message)

    async def subscribe(self, channel: str, handler: Handler) -> Unsubscribe:
        self._handlers[channel].append(handler)

        async def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers[channel].remove(handler)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))

    async def close(self) -> None:
        self._handlers.clear()


class RedisBroker:
    """Redis pub/sub broker shared by the API processes and the worker."""

    def __init__(self, redis_url: str = "redis://redis:6379/0", client: redis.Redis | None = None):
        self.client = client or redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self._listeners: set[asyncio.Task] = set()

    async def publish(self, channel: str, message: Message) -> None:
        await self.client.publish(channel, json.dumps(message, default=str))

    async def _listen(self, pubsub, channel: str, handler: Handler) -> None:
        async for raw in pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                message = json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning(f"Dropping malformed message on {channel}")
                continue
            await _dispatch(handler, channel, message)

    async def subscribe(self, channel: str, handler: Handler) -> Unsubscribe:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._listen(pubsub, channel, handler))
        self._listeners.add(task)

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._listeners.discard(task)
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

        return unsubscribe

    async def close(self) -> None:
        for task in list(self._listeners):
            task.cancel()
        self._listeners.clear()
        await self.client.aclose()


def get_broker(config: RealtimeConfig | None = None) -> Broker:
    """Build the broker selected by REALTIME_BACKEND."""
    config = config or RealtimeConfig()
    if config.backend == "redis":
        return RedisBroker(config.redis_url)
    if config.backend != "memory":
        raise ValueError(f"Unknown realtime backend: {config.backend}")
    return MemoryBroker()


async def publish_change(broker: Broker | None, event: ChangeEvent) -> bool:
    """Publish a row-change event. Returns False instead of raising."""
    if broker is None:
        return False
    try:
        await broker.publish(
            org_channel(event.org_id), {"type": "change", **event.model_dump(mode="json")}
        )
    except Exception as e:
        logger.warning(f"Change notification for {event.table} in {event.org_id} not sent: {e}")
        return False
    return True


async def broadcast_work_order_update(
    broker: Broker | None,
    org_id: str,
    attempts: int = 3,
    pause_seconds: float = 0.3,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Tell crew sessions to refetch their work orders.

    Retries with a pause growing linearly per attempt. Failure is logged,
    never raised.
    """
    if broker is None:
        return False

    message = {"type": WORK_ORDER_UPDATE, "org_id": org_id, "timestamp": utcnow().isoformat()}
    for attempt in range(1, attempts + 1):
        try:
            await broker.publish(crew_channel(org_id), message)
            return True
        except Exception as e:
            logger.warning(f"Crew broadcast attempt {attempt}/{attempts} for {org_id} failed: {e}")
            if attempt < attempts:
                await sleep(pause_seconds * attempt)

    logger.error(f"Crew broadcast for {org_id} gave up after {attempts} attempts")
    return False
