"""
Change-notification channel keyed by table and user.

Supports an in-memory fallback for tests/local runs and a Redis pub/sub
implementation for production. Listeners only learn that something changed;
they are expected to refetch from the database.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

from submemo.types import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[["ChangeMessage"], None]


@dataclass(frozen=True)
class ChangeMessage:
    table: str
    user_id: str
    event: ChangeEvent
    record_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "table": self.table,
                "user_id": self.user_id,
                "event": self.event.value,
                "record_id": self.record_id,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeMessage":
        data = json.loads(raw)
        return cls(
            table=data["table"],
            user_id=data["user_id"],
            event=ChangeEvent(data["event"]),
            record_id=data.get("record_id"),
        )


class Unsubscribe(Protocol):
    def __call__(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Minimal pub/sub interface for table change notifications."""

    def publish(self, message: ChangeMessage) -> None:
        ...

    def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Unsubscribe:
        ...


def channel_name(prefix: str, table: str, user_id: str) -> str:
    return f"{prefix}:{table}:{user_id}"


@dataclass
class InMemoryChangeFeed:
    """Synchronous fan-out for testing/dev."""

    listeners: dict[tuple[str, str], list[ChangeCallback]] = field(default_factory=dict)
    published: list[ChangeMessage] = field(default_factory=list)

    def publish(self, message: ChangeMessage) -> None:
        self.published.append(message)
        for callback in list(self.listeners.get((message.table, message.user_id), [])):
            try:
                callback(message)
            except Exception:
                logger.exception("Change listener failed for %s", message.table)

    def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Unsubscribe:
        key = (table, user_id)
        self.listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self.listeners.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe


@dataclass
class RedisChangeFeed:
    """Redis pub/sub backed feed; each subscription runs its own listener thread."""

    url: str
    channel_prefix: str = "submemo:changes"
    poll_interval: float = 1.0

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def publish(self, message: ChangeMessage) -> None:
        channel = channel_name(self.channel_prefix, message.table, message.user_id)
        try:
            self.client.publish(channel, message.to_json())
        except redis_exceptions.ConnectionError:
            # Managed Redis drops idle connections; reconnect once and retry.
            self.client = redis.Redis.from_url(self.url)
            self.client.publish(channel, message.to_json())

    def subscribe(
        self, table: str, user_id: str, callback: ChangeCallback
    ) -> Unsubscribe:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        channel = channel_name(self.channel_prefix, table, user_id)

        def handler(raw: dict) -> None:
            try:
                callback(ChangeMessage.from_json(raw["data"]))
            except Exception:
                logger.exception("Change listener failed for %s", channel)

        pubsub.subscribe(**{channel: handler})
        worker = pubsub.run_in_thread(sleep_time=self.poll_interval, daemon=True)
        lock = threading.Lock()
        stopped = False

        def unsubscribe() -> None:
            nonlocal stopped
            with lock:
                if stopped:
                    return
                stopped = True
            worker.stop()
            pubsub.close()

        return unsubscribe
