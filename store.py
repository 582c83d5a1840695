"""Ticket store on top of SQLModel.

The store is the only shared mutable resource of the queue.  It owns the
engine, converts SQLAlchemy failures into ``StoreError`` and publishes a
``ChangeEvent`` after every successful write.  A fresh session is opened
per operation and closed right after, so no connection state is shared
between concurrent requests.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from changefeed import ChangeEvent, LocalChangeFeed
from models import TICKET_SEQUENCE_ID, Ticket, TicketSequence, TicketStatus, is_allowed_transition

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A read or write against the ticket store failed."""


class Conflict(StoreError):
    """A ticket number was already taken; the caller should retry."""


class InvalidTransition(StoreError):
    """The requested status change is not a single forward step."""


def create_store_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class TicketStore:
    def __init__(self, engine, feed=None) -> None:
        self.engine = engine
        self.feed = feed if feed is not None else LocalChangeFeed()

    @classmethod
    def from_url(cls, database_url: str, feed=None) -> "TicketStore":
        return cls(create_store_engine(database_url), feed=feed)

    def create_tables(self) -> None:
        """Create tables if they do not exist."""
        SQLModel.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _notify(self, kind: str, ticket_id: Optional[str]) -> None:
        try:
            self.feed.publish(ChangeEvent(kind=kind, ticket_id=ticket_id))
        except Exception as e:
            logger.error(f"Failed to publish {kind} for ticket {ticket_id}: {e}")

    # ----- writes -----

    def insert(self, ticket: Ticket) -> Ticket:
        """Insert a ticket and return it as stored.

        The ticket sequence is raised in the same transaction.  A number at
        or below the sequence was already issued, even if that ticket has
        since been deleted, and is rejected with ``Conflict``.
        """
        try:
            with self._session() as session:
                sequence = session.get(TicketSequence, TICKET_SEQUENCE_ID)
                if sequence is None:
                    sequence = TicketSequence(id=TICKET_SEQUENCE_ID)
                if ticket.ticket_number <= sequence.last_number:
                    raise Conflict(f"Ticket number {ticket.ticket_number} was already issued")
                sequence.last_number = ticket.ticket_number
                session.add(sequence)
                session.add(ticket)
                session.commit()
                session.refresh(ticket)
        except IntegrityError as e:
            raise Conflict(f"Ticket number {ticket.ticket_number} is already taken") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to add ticket: {e}") from e
        self._notify("INSERT", ticket.id)
        return ticket

    def transition(self, ticket_id: str, current: TicketStatus, new: TicketStatus) -> bool:
        """Move a ticket from ``current`` to ``new`` if it is still ``current``.

        Returns False when the row was not in ``current`` any more (or does
        not exist), which is how a lost race shows up.
        """
        if not is_allowed_transition(current, new):
            raise InvalidTransition(f"Cannot move ticket from {current} to {new}")
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == current)
            .values(status=new)
        )
        try:
            with self._session() as session:
                result = session.execute(stmt)
                session.commit()
                changed = result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update ticket {ticket_id}: {e}") from e
        if changed:
            self._notify("UPDATE", ticket_id)
        return changed

    def delete(self, ticket_id: str) -> bool:
        try:
            with self._session() as session:
                result = session.execute(delete(Ticket).where(Ticket.id == ticket_id))
                session.commit()
                removed = result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to remove ticket {ticket_id}: {e}") from e
        if removed:
            self._notify("DELETE", ticket_id)
        return removed

    # ----- reads -----

    def max_ticket_number(self) -> int:
        """Highest ticket number ever issued, deleted tickets included.

        0 for a fresh store.  Rows written before the sequence existed are
        covered by also looking at the tickets table.
        """
        try:
            with self._session() as session:
                sequence = session.get(TicketSequence, TICKET_SEQUENCE_ID)
                highest = session.exec(select(func.max(Ticket.ticket_number))).one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read ticket numbers: {e}") from e
        return max(sequence.last_number if sequence else 0, highest or 0)

    def get(self, ticket_id: str) -> Optional[Ticket]:
        try:
            with self._session() as session:
                return session.get(Ticket, ticket_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read ticket {ticket_id}: {e}") from e

    def get_by_number(self, ticket_number: int) -> Optional[Ticket]:
        try:
            with self._session() as session:
                return session.exec(
                    select(Ticket).where(Ticket.ticket_number == ticket_number)
                ).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read ticket #{ticket_number}: {e}") from e

    def list_by_status(self, status: TicketStatus, newest_first: bool = False) -> List[Ticket]:
        if newest_first:
            order = (Ticket.timestamp.desc(), Ticket.ticket_number.desc())
        else:
            order = (Ticket.timestamp.asc(), Ticket.ticket_number.asc())
        try:
            with self._session() as session:
                return list(session.exec(select(Ticket).where(Ticket.status == status).order_by(*order)))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {status.value} tickets: {e}") from e

    def find_by_phone(self, phone_number: str) -> List[Ticket]:
        try:
            with self._session() as session:
                return list(
                    session.exec(
                        select(Ticket)
                        .where(Ticket.phone_number == phone_number)
                        .order_by(Ticket.timestamp.desc(), Ticket.ticket_number.desc())
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to search tickets: {e}") from e
