"""Agent model - service agents tickets get assigned to"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime

from deskflow.database import Base, new_uuid, utcnow


class Agent(Base):
    """Service agent"""

    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Per-agent open ticket capacity; NULL = unlimited
    max_tickets = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Agent(id='{self.id}', name='{self.name}', active={self.is_active})>"
