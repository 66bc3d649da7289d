"""
Change feed
===========

Push channel between writers and live subscriptions. Every committed write
to the booking arena, the inbox projection or the suppression table
publishes a ``ChangeEvent``; subscribers re-run their query on each event
instead of polling.

Backends:
  - ``LocalChangeNotifier``: in-process fan-out over one ``asyncio.Queue``
    per subscriber. Used by tests and single-worker deployments.
  - ``RedisChangeNotifier``: Redis pub/sub on ``settings.change_feed_channel``
    so every API worker sees every write.

A subscription is registered as soon as ``subscribe()`` returns, so a
caller that subscribes first and queries second never misses a write made
between the two.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Final, Optional

import redis.asyncio as aioredis

from serveit.core.config import Settings, settings

logger = logging.getLogger(__name__)

# Upper bound on how long a Redis subscription blocks per poll
_REDIS_POLL_TIMEOUT_SECONDS: Final[float] = 1.0


class ChangeKind:
    BOOKING = "booking"
    INBOX = "inbox"
    SUPPRESSION = "suppression"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed write. Consumers only use it as a wake-up signal."""

    kind: str
    booking_id: Optional[str] = None
    customer_phone: Optional[str] = None
    provider_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(
            kind=data.get("kind", ChangeKind.BOOKING),
            booking_id=data.get("booking_id"),
            customer_phone=data.get("customer_phone"),
            provider_id=data.get("provider_id"),
        )


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class ChangeSubscription:
    """Handle returned by ``ChangeNotifier.subscribe``."""

    async def get(self) -> ChangeEvent:
        """Wait for the next event."""
        raise NotImplementedError

    async def drain(self) -> list[ChangeEvent]:
        """Return events already queued without waiting."""
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    def __aiter__(self) -> "ChangeSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self.get()


class ChangeNotifier:
    async def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def subscribe(self) -> ChangeSubscription:
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------

class _LocalSubscription(ChangeSubscription):
    def __init__(self, notifier: "LocalChangeNotifier") -> None:
        self._notifier = notifier
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._closed = False

    def _push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def drain(self) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def close(self) -> None:
        self._closed = True
        self._notifier._subscribers.discard(self)


class LocalChangeNotifier(ChangeNotifier):
    def __init__(self) -> None:
        self._subscribers: set[_LocalSubscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._push(event)

    async def subscribe(self) -> ChangeSubscription:
        subscription = _LocalSubscription(self)
        self._subscribers.add(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscribers):
            await subscription.close()


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

class _RedisSubscription(ChangeSubscription):
    def __init__(self, pubsub: aioredis.client.PubSub) -> None:
        self._pubsub = pubsub

    @staticmethod
    def _decode(message: dict) -> Optional[ChangeEvent]:
        try:
            return ChangeEvent.from_json(message["data"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring undecodable change event: %r", message)
            return None

    async def get(self) -> ChangeEvent:
        while True:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=_REDIS_POLL_TIMEOUT_SECONDS,
            )
            if message is None:
                continue
            event = self._decode(message)
            if event is not None:
                return event

    async def drain(self) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        while True:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=0
            )
            if message is None:
                return events
            event = self._decode(message)
            if event is not None:
                events.append(event)

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        finally:
            await self._pubsub.aclose()


class RedisChangeNotifier(ChangeNotifier):
    def __init__(self, redis_url: str, channel: str) -> None:
        self._channel = channel
        self._redis: aioredis.Redis = aioredis.from_url(redis_url, decode_responses=True)

    async def publish(self, event: ChangeEvent) -> None:
        await self._redis.publish(self._channel, event.to_json())

    async def subscribe(self) -> ChangeSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        return _RedisSubscription(pubsub)

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Change feed Redis connection closed")


def build_notifier(config: Settings = settings) -> ChangeNotifier:
    """Create the notifier selected by ``change_feed_backend``."""
    backend = config.change_feed_backend.lower()
    if backend == "redis":
        logger.info("Using Redis change feed on channel %s", config.change_feed_channel)
        return RedisChangeNotifier(config.redis_url, config.change_feed_channel)
    if backend == "local":
        return LocalChangeNotifier()
    raise ValueError(f"Unknown change_feed_backend: {config.change_feed_backend!r}")
