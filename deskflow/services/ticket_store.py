"""Ticket/message store used by the automation engine.

The engine never touches ORM objects directly: it reads immutable snapshots
(ticket + contact + queue + tags, optional triggering message) and mutates
tickets through the narrow ``TicketStore`` interface. ``SqlTicketStore`` is the
default implementation on top of the application database.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from deskflow.database import utcnow
from deskflow.models.message import Message
from deskflow.models.queue import Queue
from deskflow.models.ticket import Ticket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactSnapshot:
    id: str
    name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class QueueSnapshot:
    id: str
    name: str


@dataclass(frozen=True)
class TicketSnapshot:
    """Read-only view of a ticket at one point of an automation run."""

    id: str
    status: str
    priority: str
    queue_id: Optional[str] = None
    agent_id: Optional[str] = None
    unread_messages: int = 0
    last_message_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    tag_ids: Tuple[str, ...] = field(default_factory=tuple)
    contact: Optional[ContactSnapshot] = None
    queue: Optional[QueueSnapshot] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "priority": self.priority,
            "queueId": self.queue_id,
            "agentId": self.agent_id,
            "unreadMessages": self.unread_messages,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "tagIds": list(self.tag_ids),
            "contact": (
                {
                    "id": self.contact.id,
                    "name": self.contact.name,
                    "phoneNumber": self.contact.phone_number,
                    "email": self.contact.email,
                }
                if self.contact
                else None
            ),
            "queue": {"id": self.queue.id, "name": self.queue.name} if self.queue else None,
        }


@dataclass(frozen=True)
class MessageSnapshot:
    id: str
    ticket_id: str
    body: Optional[str] = None
    from_me: bool = False
    created_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ticketId": self.ticket_id,
            "body": self.body,
            "fromMe": self.from_me,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class TicketStore(ABC):
    """Ticket reads and the mutations automation actions are allowed to make."""

    @abstractmethod
    async def get_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        """Return the ticket with contact/queue/tags, or None if it does not exist."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageSnapshot]:
        """Return a message by id, or None."""

    @abstractmethod
    async def queue_exists(self, queue_id: str) -> bool:
        ...

    @abstractmethod
    async def assign_agent(self, ticket_id: str, agent_id: str) -> None:
        """Assign the ticket; a PENDING ticket becomes OPEN."""

    @abstractmethod
    async def move_to_queue(self, ticket_id: str, queue_id: str) -> None:
        ...

    @abstractmethod
    async def close(self, ticket_id: str, *, reason: Optional[str] = None) -> None:
        """Close the ticket and reset its unread counter."""


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_snapshot(ticket: Ticket) -> TicketSnapshot:
    contact = None
    if ticket.contact is not None:
        contact = ContactSnapshot(
            id=ticket.contact.id,
            name=ticket.contact.name,
            phone_number=ticket.contact.phone_number,
            email=ticket.contact.email,
        )
    queue = None
    if ticket.queue is not None:
        queue = QueueSnapshot(id=ticket.queue.id, name=ticket.queue.name)
    return TicketSnapshot(
        id=ticket.id,
        status=ticket.status,
        priority=ticket.priority,
        queue_id=ticket.queue_id,
        agent_id=ticket.agent_id,
        unread_messages=ticket.unread_messages or 0,
        last_message_at=_aware(ticket.last_message_at),
        closed_at=_aware(ticket.closed_at),
        created_at=_aware(ticket.created_at),
        tag_ids=tuple(sorted(relation.tag_id for relation in ticket.tags)),
        contact=contact,
        queue=queue,
    )


class SqlTicketStore(TicketStore):
    """TicketStore backed by the application database session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _load(self, ticket_id: str) -> Optional[Ticket]:
        # populate_existing: snapshots must reflect writes made earlier in the same run
        result = await self.db.execute(
            select(Ticket)
            .where(Ticket.id == ticket_id)
            .options(
                selectinload(Ticket.contact),
                selectinload(Ticket.queue),
                selectinload(Ticket.tags),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, ticket_id: str) -> Ticket:
        ticket = await self._load(ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")
        return ticket

    async def get_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        ticket = await self._load(ticket_id)
        return _to_snapshot(ticket) if ticket is not None else None

    async def get_message(self, message_id: str) -> Optional[MessageSnapshot]:
        result = await self.db.execute(select(Message).where(Message.id == message_id))
        message = result.scalar_one_or_none()
        if message is None:
            return None
        return MessageSnapshot(
            id=message.id,
            ticket_id=message.ticket_id,
            body=message.body,
            from_me=bool(message.from_me),
            created_at=_aware(message.created_at),
        )

    async def queue_exists(self, queue_id: str) -> bool:
        result = await self.db.execute(select(Queue.id).where(Queue.id == queue_id))
        return result.scalar_one_or_none() is not None

    async def assign_agent(self, ticket_id: str, agent_id: str) -> None:
        ticket = await self._require(ticket_id)
        ticket.agent_id = agent_id
        if ticket.status == "PENDING":
            ticket.status = "OPEN"
        await self.db.flush()

    async def move_to_queue(self, ticket_id: str, queue_id: str) -> None:
        ticket = await self._require(ticket_id)
        ticket.queue_id = queue_id
        await self.db.flush()

    async def close(self, ticket_id: str, *, reason: Optional[str] = None) -> None:
        ticket = await self._require(ticket_id)
        ticket.status = "CLOSED"
        ticket.closed_at = utcnow()
        ticket.unread_messages = 0
        if reason:
            ticket.close_reason = reason
        await self.db.flush()
        logger.info("ticket_store: closed ticket=%s reason=%s", ticket_id, reason)

