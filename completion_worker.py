#!/usr/bin/env python3
"""
Completion Worker

Drains due ``called -> completed`` transitions from Redis.  The app runs
one in a background thread by default; it can also run as a separate
process (set COMPLETION_WORKER_INLINE=false on the app in that case).

Usage:
    python completion_worker.py

Environment Variables Required:
    DATABASE_URL - Ticket database
    REDIS_URL - Redis connection URL
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import redis

from changefeed import RedisChangeFeed
from completion import RedisCompletionQueue
from config import Settings, configure_logging
from services import QueueService
from store import StoreError, TicketStore

logger = logging.getLogger(__name__)


class CompletionWorker:
    def __init__(self, queue: RedisCompletionQueue, service):
        self.queue = queue
        self.service = service

    def run_pending(self, now: Optional[float] = None) -> int:
        """Complete every due ticket; returns how many were completed."""
        completed = 0
        for ticket_id in self.queue.claim_due(now):
            try:
                if self.service.complete_ticket(ticket_id):
                    completed += 1
            except StoreError as e:
                # Ticket stays called; no automatic retry
                logger.error(f"Failed to mark ticket {ticket_id} as completed: {e}")
        return completed

    def run_forever(self, poll_interval: float = 0.25, stop_event: Optional[threading.Event] = None) -> None:
        """Main worker loop."""
        stop_event = stop_event or threading.Event()
        logger.info("Completion worker started - waiting for due tickets...")
        while not stop_event.is_set():
            try:
                self.run_pending()
            except redis.RedisError as e:
                logger.error(f"Error reading completion queue: {e}")
                stop_event.wait(1)  # brief pause on error
                continue
            stop_event.wait(poll_interval)
        logger.info("Completion worker stopped")

    def get_stats(self) -> dict:
        try:
            return {"pending": self.queue.pending(), "worker_status": "running", "last_check": time.time()}
        except redis.RedisError as e:
            return {"error": str(e)}


def start_in_thread(worker: CompletionWorker, poll_interval: float = 0.25):
    """Run the worker in a daemon thread; returns (thread, stop_event)."""
    stop_event = threading.Event()
    thread = threading.Thread(
        target=worker.run_forever,
        kwargs={"poll_interval": poll_interval, "stop_event": stop_event},
        name="completion-worker",
        daemon=True,
    )
    thread.start()
    return thread, stop_event


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if not settings.redis_url:
        logger.error("REDIS_URL environment variable required")
        return

    store = TicketStore.from_url(settings.database_url, feed=RedisChangeFeed.from_url(settings.redis_url))
    store.create_tables()
    service = QueueService(store, dispatcher=None)
    worker = CompletionWorker(RedisCompletionQueue.from_url(settings.redis_url), service)
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
