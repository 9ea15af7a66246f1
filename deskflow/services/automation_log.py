"""Audit trail of automation runs.

Append-only: one entry per rule evaluated. Entries outlive their rule; when a
rule is deleted its entries keep ``rule_id = NULL``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.models.automation_log import AUTOMATION_LOG_STATUSES, AutomationLog
from deskflow.models.automation_rule import AUTOMATION_TRIGGERS, AutomationRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    id: str
    trigger: str
    status: str
    rule_id: Optional[str]
    rule_name: Optional[str]
    message: Optional[str]
    error: Optional[str]
    context: Any
    created_at: datetime


def clamp_limit(limit: Optional[int], *, default: int = 20, maximum: int = 100) -> int:
    """Page size for log listings, bounded to ``[1, maximum]``."""
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


class AuditStore(ABC):

    @abstractmethod
    async def append(
        self,
        *,
        trigger: str,
        status: str,
        rule_id: Optional[str] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
        context: Any = None,
    ) -> None:
        ...

    @abstractmethod
    async def list_entries(
        self,
        *,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        trigger: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Newest first."""


class SqlAuditStore(AuditStore):
    """Audit entries in the ``automation_logs`` table.

    ``append`` writes inside a SAVEPOINT on the run's session and leaves the
    commit to the session owner (the dispatcher or the request). A failed
    insert rolls back to the savepoint only, so the ticket changes made by the
    rule's actions stay in the transaction.
    """

    def __init__(self, db: AsyncSession, *, default_limit: int = 20, max_limit: int = 100) -> None:
        self.db = db
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def append(
        self,
        *,
        trigger: str,
        status: str,
        rule_id: Optional[str] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
        context: Any = None,
    ) -> None:
        try:
            async with self.db.begin_nested():
                self.db.add(
                    AutomationLog(
                        trigger=trigger,
                        status=status,
                        rule_id=rule_id,
                        message=message,
                        error=error,
                        context=context,
                    )
                )
        except SQLAlchemyError:
            logger.warning("automation_log: entry for rule=%s rolled back to savepoint", rule_id)
            raise

    async def list_entries(
        self,
        *,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        trigger: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        stmt = select(AutomationLog, AutomationRule.name).outerjoin(
            AutomationRule, AutomationLog.rule_id == AutomationRule.id
        )
        if rule_id:
            stmt = stmt.where(AutomationLog.rule_id == rule_id)
        # unknown filter values are ignored rather than rejected
        if status in AUTOMATION_LOG_STATUSES:
            stmt = stmt.where(AutomationLog.status == status)
        if trigger in AUTOMATION_TRIGGERS:
            stmt = stmt.where(AutomationLog.trigger == trigger)

        stmt = stmt.order_by(AutomationLog.created_at.desc(), AutomationLog.id.desc()).limit(
            clamp_limit(limit, default=self.default_limit, maximum=self.max_limit)
        )
        result = await self.db.execute(stmt)
        return [
            AuditEntry(
                id=log.id,
                trigger=log.trigger,
                status=log.status,
                rule_id=log.rule_id,
                rule_name=rule_name,
                message=log.message,
                error=log.error,
                context=log.context,
                created_at=log.created_at,
            )
            for log, rule_name in result.all()
        ]
