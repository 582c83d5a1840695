"""Deferred ``called -> completed`` transitions.

After call-next the called ticket stays visible for a short moment and is
then marked completed.  Two schedulers exist:

* ``TimerCompletionScheduler`` - an in-process timer.  Nothing survives a
  restart; pending completions are simply lost and the ticket stays
  ``called``.
* ``RedisCompletionQueue`` - a Redis sorted set scored by due time.  Entries
  outlive the process and are drained by ``CompletionWorker``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

import redis

logger = logging.getLogger(__name__)

COMPLETIONS_KEY = "queue:completions"


class TimerCompletionScheduler:
    def __init__(self, complete: Callable[[str], object]):
        self.complete = complete

    def schedule(self, ticket_id: str, delay_ms: int) -> None:
        timer = threading.Timer(delay_ms / 1000.0, self._run, args=(ticket_id,))
        timer.daemon = True
        timer.start()

    def _run(self, ticket_id: str) -> None:
        try:
            self.complete(ticket_id)
        except Exception as e:
            logger.error(f"Failed to mark ticket {ticket_id} as completed: {e}")


class RedisCompletionQueue:
    def __init__(self, redis_client: redis.Redis, key: str = COMPLETIONS_KEY):
        self.redis = redis_client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str = COMPLETIONS_KEY) -> "RedisCompletionQueue":
        return cls(redis.from_url(url, decode_responses=True), key=key)

    def schedule(self, ticket_id: str, delay_ms: int) -> None:
        due = time.time() + delay_ms / 1000.0
        self.redis.zadd(self.key, {ticket_id: due})

    def claim_due(self, now: Optional[float] = None) -> List[str]:
        """Take every entry whose due time has passed.

        ZREM decides ownership: when several workers race for the same entry
        only the one whose removal succeeded gets it.
        """
        now = time.time() if now is None else now
        claimed = []
        for ticket_id in self.redis.zrangebyscore(self.key, 0, now):
            if self.redis.zrem(self.key, ticket_id) == 1:
                claimed.append(ticket_id)
        return claimed

    def pending(self) -> int:
        return self.redis.zcard(self.key)
