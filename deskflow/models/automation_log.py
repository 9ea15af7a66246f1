"""AutomationLog model - append-only audit trail of rule evaluations"""

from sqlalchemy import Column, String, Text, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship

from deskflow.database import Base, new_uuid, utcnow

AUTOMATION_LOG_STATUSES = ("SUCCESS", "SKIPPED", "FAILED")


class AutomationLog(Base):
    """One entry per rule evaluated in an automation run"""

    __tablename__ = "automation_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    rule_id = Column(String(36), ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    trigger = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # SUCCESS | SKIPPED | FAILED
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    rule = relationship("AutomationRule", back_populates="logs")

    __table_args__ = (
        Index("idx_automation_logs_rule", "rule_id", "created_at"),
        Index("idx_automation_logs_status", "status", "created_at"),
        Index("idx_automation_logs_trigger", "trigger", "created_at"),
    )

    def __repr__(self):
        return f"<AutomationLog(id='{self.id}', rule_id='{self.rule_id}', status='{self.status}')>"
