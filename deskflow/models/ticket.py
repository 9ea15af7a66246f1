"""Ticket model - one customer conversation handled by the service team"""

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow

TICKET_STATUSES = ("BOT", "PENDING", "OPEN", "CLOSED")
TICKET_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")

# Statuses counted as an agent's current workload
OPEN_TICKET_STATUSES = ("PENDING", "OPEN")


class Ticket(Base):
    """Ticket model"""

    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=new_uuid)
    contact_id = Column(String(36), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    queue_id = Column(String(36), ForeignKey("queues.id", ondelete="SET NULL"), nullable=True)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True)

    # Workflow state
    status = Column(String(20), nullable=False, default="PENDING")  # BOT | PENDING | OPEN | CLOSED
    priority = Column(String(20), nullable=False, default="MEDIUM")  # LOW | MEDIUM | HIGH | URGENT
    unread_messages = Column(Integer, nullable=False, default=0)

    # Timeline
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    close_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    contact = relationship("Contact")
    queue = relationship("Queue")
    agent = relationship("Agent")
    tags = relationship("TicketTag", back_populates="ticket", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="ticket", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_tickets_agent_status", "agent_id", "status"),
        Index("idx_tickets_queue_status", "queue_id", "status"),
    )

    def __repr__(self):
        return f"<Ticket(id='{self.id}', status='{self.status}', queue_id='{self.queue_id}')>"
