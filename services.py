"""Queue business logic.

``QueueService`` issues tickets, computes positions and advances the
queue.  It talks to the ticket store for state, to the notification
dispatcher for customer messages and to a completion scheduler for the
deferred ``called -> completed`` step.

Only one operator is expected to press "call next" at a time.  Status
changes are compare-and-swap in the store, so a second concurrent caller
cannot transition the same ticket twice; it picks the next head instead.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from models import Ticket, TicketStatus
from notifications import CustomerAtPositionThree, CustomerCalled, CustomerNowNext
from store import StoreError, TicketStore

logger = logging.getLogger(__name__)

CALL_NEXT_ATTEMPTS = 3


def position_of(ticket: Ticket, waiting: List[Ticket]) -> Optional[int]:
    """1-based rank of a waiting ticket within ``waiting``; None otherwise.

    ``waiting`` must be a fresh snapshot; positions computed from a stale
    list are consistent with each other but not with the store.
    """
    if TicketStatus(ticket.status) != TicketStatus.waiting:
        return None
    ahead = sum(
        1
        for t in waiting
        if TicketStatus(t.status) == TicketStatus.waiting and t.ticket_number < ticket.ticket_number
    )
    return ahead + 1


def people_before(position: Optional[int]) -> Optional[int]:
    """Display value derived from a position: how many are ahead."""
    if position is None:
        return None
    return position - 1


class CallResult:
    """Outcome of a call-next: who was called, who is up next, what was sent."""

    def __init__(self, called: Optional[Ticket] = None, next_up: Optional[Ticket] = None, deliveries=None):
        self.called = called
        self.next_up = next_up
        self.deliveries = deliveries or []


class QueueService:
    def __init__(self, store: TicketStore, dispatcher, scheduler=None, completion_delay_ms: int = 1000):
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.completion_delay_ms = completion_delay_ms

    # ----- registration -----

    def register(self, name: str, phone_number: str, email: str) -> Ticket:
        """Issue the next ticket number and add a waiting ticket.

        Raises ``Conflict`` if another registration took the same number
        first; the caller is expected to retry.
        """
        next_number = self.store.max_ticket_number() + 1
        ticket = Ticket(
            ticket_number=next_number,
            name=name,
            phone_number=phone_number,
            email=email,
            status=TicketStatus.waiting,
        )
        ticket = self.store.insert(ticket)
        logger.info(f"Issued ticket #{ticket.ticket_number}")
        return ticket

    # ----- reads (fail soft for display) -----

    def list_waiting(self) -> List[Ticket]:
        try:
            return self.store.list_by_status(TicketStatus.waiting)
        except StoreError as e:
            logger.error(f"Error fetching queue: {e}")
            return []

    def get_called_ticket(self) -> Optional[Ticket]:
        try:
            called = self.store.list_by_status(TicketStatus.called, newest_first=True)
        except StoreError as e:
            logger.error(f"Error fetching called ticket: {e}")
            return None
        return called[0] if called else None

    def search_by_phone(self, phone_number: str) -> List[Ticket]:
        try:
            return self.store.find_by_phone(phone_number)
        except StoreError as e:
            logger.error(f"Error searching by phone: {e}")
            return []

    def get_ticket(self, ticket_number: int) -> Optional[Ticket]:
        return self.store.get_by_number(ticket_number)

    # ----- queue advance -----

    def call_next(self) -> Optional[Ticket]:
        """Call the head of the queue; return the new head (or None)."""
        return self.call_next_detailed().next_up

    def call_next_detailed(self) -> CallResult:
        for _ in range(CALL_NEXT_ATTEMPTS):
            waiting = self.list_waiting()
            if not waiting:
                return CallResult()

            head = waiting[0]
            if not self.store.transition(head.id, TicketStatus.waiting, TicketStatus.called):
                logger.warning(f"Ticket #{head.ticket_number} was already called, re-reading queue")
                continue
            head.status = TicketStatus.called
            logger.info(f"Called ticket #{head.ticket_number}")

            following = waiting[1] if len(waiting) > 1 else None
            third_in_line = waiting[2] if len(waiting) > 2 else None

            deliveries = self._notify(CustomerCalled(head))
            if following is not None:
                deliveries += self._notify(CustomerNowNext(following))
            if third_in_line is not None:
                deliveries += self._notify(CustomerAtPositionThree(third_in_line))

            self._schedule_completion(head)
            return CallResult(called=head, next_up=following, deliveries=deliveries)

        logger.error("Gave up calling next after repeated concurrent calls")
        return CallResult()

    def _notify(self, event) -> list:
        try:
            return self.dispatcher.dispatch(event)
        except Exception as e:
            logger.error(f"Failed to notify ticket #{event.ticket.ticket_number} ({type(event).__name__}): {e}")
            return []

    def _schedule_completion(self, ticket: Ticket) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.schedule(ticket.id, self.completion_delay_ms)
        except Exception as e:
            logger.error(f"Failed to schedule completion of ticket #{ticket.ticket_number}: {e}")

    def complete_ticket(self, ticket_id: str) -> bool:
        """Mark a called ticket completed.  False if it was not ``called``."""
        done = self.store.transition(ticket_id, TicketStatus.called, TicketStatus.completed)
        if done:
            logger.info(f"Ticket {ticket_id} completed")
        else:
            logger.warning(f"Ticket {ticket_id} was not in called state, nothing to complete")
        return done

    # ----- administration -----

    def remove_ticket(self, ticket_id: str) -> bool:
        removed = self.store.delete(ticket_id)
        if removed:
            logger.info(f"Removed ticket {ticket_id}")
        return removed
