"""Message model - messages exchanged on a ticket"""

from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow


class Message(Base):
    """Message in a ticket (incoming from the contact or outgoing from an agent)"""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_uuid)
    ticket_id = Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)

    body = Column(Text, nullable=True)
    from_me = Column(Boolean, default=False, nullable=False)
    media_type = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    ticket = relationship("Ticket", back_populates="messages")

    __table_args__ = (
        Index("idx_messages_ticket", "ticket_id", "created_at"),
    )

    def __repr__(self):
        return f"<Message(id='{self.id}', ticket_id='{self.ticket_id}', from_me={self.from_me})>"
