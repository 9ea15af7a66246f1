"""Shared FastAPI dependencies for the automation routers.

Application-owned resources (rule cache, ticket locks, webhook client, survey
dispatcher) live on ``app.state`` and are read per request, so tests can swap
them.
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.config import get_settings
from deskflow.database import get_db
from deskflow.services.automation_engine import AutomationEngine, build_engine
from deskflow.services.automation_rules import RuleCache, RuleRepository
from deskflow.services.automation_triggers import TicketLockRegistry
from deskflow.services.survey_dispatcher import SurveyDispatcher
from deskflow.services.webhook_client import WebhookClient


def get_rule_cache(request: Request) -> RuleCache:
    cache = getattr(request.app.state, "rule_cache", None)
    if cache is None:
        cache = request.app.state.rule_cache = RuleCache()
    return cache


def get_ticket_locks(request: Request) -> TicketLockRegistry:
    locks = getattr(request.app.state, "ticket_locks", None)
    if locks is None:
        locks = request.app.state.ticket_locks = TicketLockRegistry()
    return locks


def get_webhook_client(request: Request) -> Optional[WebhookClient]:
    return getattr(request.app.state, "webhook_client", None)


def get_survey_dispatcher(request: Request) -> Optional[SurveyDispatcher]:
    return getattr(request.app.state, "survey_dispatcher", None)


def get_rule_repository(
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
) -> RuleRepository:
    return RuleRepository(db, cache)


def get_engine(
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
    webhook_client: Optional[WebhookClient] = Depends(get_webhook_client),
    survey_dispatcher: Optional[SurveyDispatcher] = Depends(get_survey_dispatcher),
) -> AutomationEngine:
    return build_engine(
        db,
        rule_cache=cache,
        webhook_client=webhook_client,
        survey_dispatcher=survey_dispatcher,
        settings=get_settings(),
    )
