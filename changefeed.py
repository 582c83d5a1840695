"""Change notification stream for the tickets table.

Every insert, update or delete on the tickets table publishes a
``ChangeEvent``.  Subscribers get a generic "something changed" callback;
the event says which row moved but consumers are expected to refetch
whatever view they show instead of applying it as a delta.

Two feeds are provided: an in-process one used by tests and single-process
deployments, and one backed by Redis pub/sub so that several app processes
(and the completion worker) see each other's writes.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

import redis

logger = logging.getLogger(__name__)

CHANNEL = "queue:tickets"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # INSERT, UPDATE or DELETE
    ticket_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(kind=data.get("kind", "UPDATE"), ticket_id=data.get("ticket_id"))


Listener = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


class LocalChangeFeed:
    """In-process feed.  Callbacks run synchronously in the publishing thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Change listener failed for {event}: {e}")

    def subscribe(self, listener: Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class RedisChangeFeed:
    """Feed backed by a Redis pub/sub channel.

    Each subscription owns its own ``PubSub`` object and listener thread, so
    cancelling one view never disturbs another.
    """

    def __init__(self, redis_client: redis.Redis, channel: str = CHANNEL) -> None:
        self.redis = redis_client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str = CHANNEL) -> "RedisChangeFeed":
        return cls(redis.from_url(url, decode_responses=True), channel=channel)

    def publish(self, event: ChangeEvent) -> None:
        try:
            self.redis.publish(self.channel, event.to_json())
        except redis.RedisError as e:
            logger.error(f"Redis publish error: {e}")

    def subscribe(self, listener: Listener) -> Unsubscribe:
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)

        def handle(message) -> None:
            try:
                event = ChangeEvent.from_json(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed change message {message!r}: {e}")
                return
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Change listener failed for {event}: {e}")

        pubsub.subscribe(**{self.channel: handle})
        thread = pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        stopped = threading.Event()

        def unsubscribe() -> None:
            if stopped.is_set():
                return
            stopped.set()
            thread.stop()
            pubsub.close()

        return unsubscribe
