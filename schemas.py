"""Pydantic schemas for requests and responses."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from models import Ticket, TicketStatus
from services import people_before


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone_number: str = Field(min_length=1, max_length=40)
    email: str = Field(min_length=3, max_length=320)


class TicketOut(BaseModel):
    id: str
    ticket_number: int
    name: str
    phone_number: str
    email: str
    status: TicketStatus
    timestamp: datetime
    position: Optional[int] = None
    people_before: Optional[int] = None

    @classmethod
    def build(cls, ticket: Ticket, position: Optional[int] = None) -> "TicketOut":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            name=ticket.name,
            phone_number=ticket.phone_number,
            email=ticket.email,
            status=ticket.status,
            timestamp=ticket.timestamp,
            position=position,
            people_before=people_before(position),
        )


class TicketStatusView(BaseModel):
    ticket: TicketOut
    now_serving: Optional[int] = None
    next_up: Optional[int] = None
    queue_length: int = 0


class DeliveryOut(BaseModel):
    event: str
    channel: str
    ticket_number: int
    ok: bool


class CallNextResponse(BaseModel):
    called: Optional[TicketOut] = None
    next_up: Optional[TicketOut] = None
    deliveries: List[DeliveryOut] = []
