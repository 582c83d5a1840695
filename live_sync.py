"""Live view refresh driven by the ticket change feed.

Any change on the tickets table triggers a full refetch of the view the
subscriber cares about: the waiting list or the currently called ticket.
There is no diffing; callbacks should be read as "refresh now".
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from models import Ticket

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``LiveViewSync``.  ``cancel()`` stops delivery."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._active = True
        self._unsubscribe = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        logger.debug(f"Subscription {self.name} cancelled")

    __call__ = cancel

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class LiveViewSync:
    def __init__(self, service, feed):
        self.service = service
        self.feed = feed

    def subscribe_waiting(self, callback: Callable[[List[Ticket]], None]) -> Subscription:
        return self._subscribe("waiting", self.service.list_waiting, callback)

    def subscribe_called(self, callback: Callable[[Optional[Ticket]], None]) -> Subscription:
        return self._subscribe("called", self.service.get_called_ticket, callback)

    def _subscribe(self, name: str, fetch, callback) -> Subscription:
        subscription = Subscription(name)

        def on_change(event) -> None:
            if not subscription.active:
                return
            data = fetch()
            # The fetch may have raced with cancel()
            if not subscription.active:
                return
            try:
                callback(data)
            except Exception as e:
                logger.error(f"{name} view callback failed after {event}: {e}")

        subscription._unsubscribe = self.feed.subscribe(on_change)
        return subscription
