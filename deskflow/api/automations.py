"""Automation rules API endpoints - CRUD, toggle and test"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List
import logging

from deskflow.api.deps import get_engine, get_rule_repository, get_ticket_locks
from deskflow.database import get_db
from deskflow.schemas.automation import (
    AutomationDeleteResponse,
    AutomationRuleCreate,
    AutomationRuleResponse,
    AutomationRuleUpdate,
    AutomationRunSummary,
    AutomationTestRequest,
    AutomationToggleRequest,
)
from deskflow.services.automation_engine import AutomationEngine
from deskflow.services.automation_rules import RuleRepository
from deskflow.services.automation_triggers import TicketLockRegistry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/automations", tags=["automations"])


async def _get_rule_or_404(repo: RuleRepository, rule_id: str):
    rule = await repo.get(rule_id)
    if rule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Automation rule not found",
        )
    return rule


@router.get("", response_model=List[AutomationRuleResponse])
async def list_automation_rules(repo: RuleRepository = Depends(get_rule_repository)):
    """All rules, highest priority first, then creation order."""
    rules = await repo.list_rules()
    return [AutomationRuleResponse.from_model(rule) for rule in rules]


@router.get("/{rule_id}", response_model=AutomationRuleResponse)
async def get_automation_rule(rule_id: str, repo: RuleRepository = Depends(get_rule_repository)):
    rule = await _get_rule_or_404(repo, rule_id)
    return AutomationRuleResponse.from_model(rule)


@router.post("", response_model=AutomationRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_automation_rule(
    payload: AutomationRuleCreate,
    repo: RuleRepository = Depends(get_rule_repository),
):
    """
    Create an automation rule.

    Conditions and actions are validated against the closed set of variants;
    anything unknown is rejected with 422 before reaching the database.
    """
    if payload.id is not None and await repo.get(payload.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Automation rule with this id already exists",
        )
    rule = await repo.create(payload)
    return AutomationRuleResponse.from_model(rule)


@router.put("/{rule_id}", response_model=AutomationRuleResponse)
async def update_automation_rule(
    rule_id: str,
    payload: AutomationRuleUpdate,
    repo: RuleRepository = Depends(get_rule_repository),
):
    """Partial update: fields absent from the body are left untouched."""
    rule = await _get_rule_or_404(repo, rule_id)
    rule = await repo.update(rule, payload)
    return AutomationRuleResponse.from_model(rule)


@router.delete("/{rule_id}", response_model=AutomationDeleteResponse)
async def delete_automation_rule(rule_id: str, repo: RuleRepository = Depends(get_rule_repository)):
    """Delete a rule; its audit entries are kept with ruleId = null."""
    rule = await _get_rule_or_404(repo, rule_id)
    await repo.delete(rule)
    return AutomationDeleteResponse(message="Automation rule deleted")


@router.post("/{rule_id}/toggle", response_model=AutomationRuleResponse)
async def toggle_automation_rule(
    rule_id: str,
    payload: AutomationToggleRequest,
    repo: RuleRepository = Depends(get_rule_repository),
):
    rule = await _get_rule_or_404(repo, rule_id)
    rule = await repo.set_active(rule, payload.is_active)
    return AutomationRuleResponse.from_model(rule)


@router.post("/{rule_id}/test", response_model=AutomationRunSummary)
async def test_automation_rule(
    rule_id: str,
    payload: AutomationTestRequest,
    engine: AutomationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
    locks: TicketLockRegistry = Depends(get_ticket_locks),
):
    """
    Run one rule against an existing ticket.

    Dry run by default: conditions are evaluated for real, actions only
    describe what they would do and nothing is written to the audit log.
    Unknown rule or ticket is reported inside ``results``, not as an HTTP error.

    A live run (``dryRun: false``) holds the ticket's automation lock and
    commits before releasing it, so it never interleaves with a dispatched run
    on the same ticket.
    """
    if payload.dry_run:
        summary = await engine.test_rule(rule_id, payload.ticket_id, payload.message_id, dry_run=True)
    else:
        async with locks.hold(payload.ticket_id):
            summary = await engine.test_rule(rule_id, payload.ticket_id, payload.message_id, dry_run=False)
            await db.commit()
    logger.info(
        "Automation test rule=%s ticket=%s dry_run=%s results=%d",
        rule_id, payload.ticket_id, payload.dry_run, len(summary.results),
    )
    return summary
