"""
Change-event queue used as the push transport for entity updates.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production. Consumers that cannot hold a connection fall
back to the polling notifier in `campus_assist.notifier`.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

from campus_assist.errors import StoreUnavailable
from shared.constants import DEFAULT_EVENT_TOPIC_MAX_LENGTH

logger = logging.getLogger(__name__)

CHANGE_ADDED = "added"
CHANGE_CHANGED = "changed"
CHANGE_REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    entity_kind: str
    entity_id: str
    change: str
    status: Optional[str] = None
    previous_status: Optional[str] = None
    actor_id: Optional[str] = None
    occurred_at: float = field(default_factory=lambda: time.time())

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, payload: str | bytes) -> "ChangeEvent":
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        return cls(**json.loads(payload))


def actor_topic(actor_id: str) -> str:
    return f"actor:{actor_id}"


class EventQueue(Protocol):
    """Minimal fan-out interface: producers publish, consumers pop per topic."""

    def publish(self, topic: str, event: ChangeEvent) -> None:
        ...

    def next_event(
        self, topic: str, *, block: bool = True, timeout: int | None = None
    ) -> Optional[ChangeEvent]:
        ...


@dataclass
class InMemoryEventQueue:
    """
    Simple per-topic FIFO for testing/dev. Each topic keeps at most
    `max_length` events; the oldest are dropped first.
    """

    max_length: int = DEFAULT_EVENT_TOPIC_MAX_LENGTH
    topics: dict = field(default_factory=dict)

    def publish(self, topic: str, event: ChangeEvent) -> None:
        items = self.topics.get(topic)
        if items is None:
            items = self.topics[topic] = deque(maxlen=self.max_length)
        items.append(event)

    def next_event(
        self, topic: str, *, block: bool = True, timeout: int | None = None
    ) -> Optional[ChangeEvent]:
        items = self.topics.get(topic)
        if not items:
            return None
        return items.popleft()


@dataclass
class RedisEventQueue:
    """Redis-backed queue using list push/pop operations, capped per topic."""

    url: str
    prefix: str = "campus_assist:events"
    max_length: int = DEFAULT_EVENT_TOPIC_MAX_LENGTH

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def publish(self, topic: str, event: ChangeEvent) -> None:
        key = self._key(topic)
        pipe = self.client.pipeline()
        pipe.rpush(key, event.to_json())
        pipe.ltrim(key, -self.max_length, -1)
        pipe.execute()

    def next_event(
        self, topic: str, *, block: bool = True, timeout: int | None = None
    ) -> Optional[ChangeEvent]:
        try:
            if block:
                result = self.client.blpop(self._key(topic), timeout=timeout or 0)
                if result is None:
                    return None
                _, payload = result
            else:
                payload = self.client.lpop(self._key(topic))
                if payload is None:
                    return None
            return ChangeEvent.from_json(payload)
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as empty queue
            # and let the consumer loop retry.
            logger.warning("Redis connection reset while reading %s", topic)
            self.client = redis.Redis.from_url(self.url)
            return None
        except redis_exceptions.RedisError as exc:
            logger.exception("Failed to read events from %s", topic)
            raise StoreUnavailable(
                "Live updates are temporarily unavailable. Please try again."
            ) from exc


def publish_quietly(queue: Optional[EventQueue], topics: list[str], event: ChangeEvent) -> None:
    """Publish to each topic; delivery is best-effort once the write committed."""
    if queue is None:
        return
    for topic in topics:
        try:
            queue.publish(topic, event)
        except redis_exceptions.RedisError:
            logger.exception("Failed to publish %s to %s", event.change, topic)
