"""Tag model - labels attached to tickets"""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow


class Tag(Base):
    """Ticket label"""

    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(100), nullable=False)
    color = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Tag(id='{self.id}', name='{self.name}')>"


class TicketTag(Base):
    """Ticket <-> tag association"""

    __tablename__ = "ticket_tags"

    id = Column(String(36), primary_key=True, default=new_uuid)
    ticket_id = Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    ticket = relationship("Ticket", back_populates="tags")
    tag = relationship("Tag")

    __table_args__ = (
        UniqueConstraint("ticket_id", "tag_id", name="uq_ticket_tag"),
    )
