"""Queue model - routing queues and their agent membership"""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow


class Queue(Base):
    """Service queue a ticket can be routed to"""

    __tablename__ = "queues"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    color = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    members = relationship("QueueAgent", back_populates="queue", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Queue(id='{self.id}', name='{self.name}')>"


class QueueAgent(Base):
    """Agent membership in a queue"""

    __tablename__ = "queue_agents"

    id = Column(String(36), primary_key=True, default=new_uuid)
    queue_id = Column(String(36), ForeignKey("queues.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)

    queue = relationship("Queue", back_populates="members")

    __table_args__ = (
        UniqueConstraint("queue_id", "agent_id", name="uq_queue_agent"),
    )
