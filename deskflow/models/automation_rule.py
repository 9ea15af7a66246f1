"""AutomationRule model - declarative trigger/conditions/actions unit"""

from sqlalchemy import Column, String, Integer, Boolean, Text, DateTime, JSON, Index
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow

AUTOMATION_TRIGGERS = ("TICKET_CREATED", "MESSAGE_RECEIVED", "TICKET_STATUS_CHANGED")


class AutomationRule(Base):
    """Automation rule evaluated when its trigger fires"""

    __tablename__ = "automation_rules"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    trigger = Column(String(50), nullable=False)  # TICKET_CREATED | MESSAGE_RECEIVED | TICKET_STATUS_CHANGED
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    stop_on_match = Column(Boolean, nullable=False, default=False)

    # Condition/action variants exactly as accepted by the admin API (camelCase keys)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    extra_data = Column("metadata", JSON, nullable=True)

    last_executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    logs = relationship("AutomationLog", back_populates="rule", passive_deletes=True)

    __table_args__ = (
        Index("idx_automation_rules_trigger_active", "trigger", "is_active", "priority"),
    )

    def __repr__(self):
        return (
            f"<AutomationRule(id='{self.id}', trigger='{self.trigger}', "
            f"priority={self.priority}, active={self.is_active})>"
        )
