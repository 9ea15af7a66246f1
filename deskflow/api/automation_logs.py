"""Automation audit log API"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from deskflow.config import get_settings
from deskflow.database import get_db
from deskflow.schemas.automation import AutomationLogResponse
from deskflow.services.automation_log import SqlAuditStore

router = APIRouter(prefix="/automation-logs", tags=["automations"])


@router.get("", response_model=List[AutomationLogResponse])
async def list_automation_logs(
    rule_id: Optional[str] = Query(None, alias="ruleId"),
    status: Optional[str] = Query(None, description="SUCCESS | SKIPPED | FAILED; other values are ignored"),
    trigger: Optional[str] = Query(None, description="Unknown triggers are ignored"),
    limit: Optional[int] = Query(None, description="Defaults to 20, clamped to [1, 100]"),
    db: AsyncSession = Depends(get_db),
):
    """Newest entries first."""
    settings = get_settings()
    store = SqlAuditStore(
        db,
        default_limit=settings.AUTOMATION_LOG_DEFAULT_LIMIT,
        max_limit=settings.AUTOMATION_LOG_MAX_LIMIT,
    )
    entries = await store.list_entries(rule_id=rule_id, status=status, trigger=trigger, limit=limit)
    return [
        AutomationLogResponse(
            id=entry.id,
            trigger=entry.trigger,
            status=entry.status,
            rule_id=entry.rule_id,
            rule_name=entry.rule_name,
            message=entry.message,
            error=entry.error,
            context=entry.context,
            created_at=entry.created_at,
        )
        for entry in entries
    ]
