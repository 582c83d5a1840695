"""Database models for the walk-in queue.

We use SQLModel to define the schema.  A single ``tickets`` table holds
every ticket still on record; ``ticket_number`` is unique so that two racing
registrations cannot both hold the same number.  ``ticket_sequence`` keeps
the high-water mark so that numbers of deleted tickets are not reissued.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict

from sqlmodel import Field, SQLModel


class TicketStatus(str, Enum):
    """Possible statuses for a ticket."""

    waiting = "waiting"
    called = "called"
    completed = "completed"


# Statuses only move forward, one step at a time.
ALLOWED_TRANSITIONS: Dict[TicketStatus, TicketStatus] = {
    TicketStatus.waiting: TicketStatus.called,
    TicketStatus.called: TicketStatus.completed,
}


def is_allowed_transition(current: TicketStatus, new: TicketStatus) -> bool:
    return ALLOWED_TRANSITIONS.get(TicketStatus(current)) == TicketStatus(new)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"

    id: str = Field(default_factory=_new_id, primary_key=True)
    ticket_number: int = Field(index=True, unique=True)
    name: str
    phone_number: str = Field(default="", index=True)
    email: str = ""
    status: TicketStatus = Field(default=TicketStatus.waiting, index=True)
    timestamp: datetime = Field(default_factory=_utcnow, index=True)



# Single row holding the highest number ever issued.  Deleting a ticket
# leaves it untouched, so numbers are never handed out twice.
TICKET_SEQUENCE_ID = 1


class TicketSequence(SQLModel, table=True):
    __tablename__ = "ticket_sequence"

    id: int = Field(default=TICKET_SEQUENCE_ID, primary_key=True)
    last_number: int = 0
