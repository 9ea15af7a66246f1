"""Entry points that run automations when ticket events happen.

The ticket/message services call ``on_ticket_created``,
``on_message_received`` and ``on_ticket_status_changed`` after their own
transaction is committed. Each call:

- opens its own database session, so automation never shares (or rolls back)
  the caller's transaction,
- holds a per-ticket lock for the whole run, so two events on the same ticket
  are processed one after the other while other tickets proceed in parallel,
- never raises: failures are logged once and the call returns ``None``.

Usage::

    dispatcher = AutomationDispatcher(AsyncSessionLocal, rule_cache=app.state.rule_cache)
    await dispatcher.on_message_received(ticket.id, message.id)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional

from deskflow.config import Settings, get_settings
from deskflow.models.automation_rule import AUTOMATION_TRIGGERS
from deskflow.schemas.automation import AutomationRunSummary
from deskflow.services.automation_engine import build_engine
from deskflow.services.automation_rules import RuleCache
from deskflow.services.survey_dispatcher import SurveyDispatcher
from deskflow.services.webhook_client import WebhookClient

logger = logging.getLogger(__name__)


@dataclass
class _TicketLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    holders: int = 0


class TicketLockRegistry:
    """One asyncio.Lock per ticket id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, _TicketLock] = {}

    @asynccontextmanager
    async def hold(self, ticket_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(ticket_id)
        if entry is None:
            entry = self._locks[ticket_id] = _TicketLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(ticket_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class AutomationDispatcher:
    """Fire-and-log wrapper around the engine for event sources."""

    def __init__(
        self,
        session_factory: Callable,
        *,
        rule_cache: Optional[RuleCache] = None,
        webhook_client: Optional[WebhookClient] = None,
        survey_dispatcher: Optional[SurveyDispatcher] = None,
        settings: Optional[Settings] = None,
        locks: Optional[TicketLockRegistry] = None,
        engine_factory: Callable = build_engine,
    ) -> None:
        self.session_factory = session_factory
        self.rule_cache = rule_cache if rule_cache is not None else RuleCache()
        self.webhook_client = webhook_client
        self.survey_dispatcher = survey_dispatcher
        self.settings = settings or get_settings()
        self.locks = locks if locks is not None else TicketLockRegistry()
        self.engine_factory = engine_factory

    async def dispatch(
        self,
        trigger: str,
        ticket_id: str,
        message_id: Optional[str] = None,
    ) -> Optional[AutomationRunSummary]:
        if trigger not in AUTOMATION_TRIGGERS:
            logger.warning("automation_dispatcher: unknown trigger=%s ticket=%s", trigger, ticket_id)
            return None

        try:
            async with self.locks.hold(ticket_id):
                async with self.session_factory() as db:
                    engine = self.engine_factory(
                        db,
                        rule_cache=self.rule_cache,
                        webhook_client=self.webhook_client,
                        survey_dispatcher=self.survey_dispatcher,
                        settings=self.settings,
                    )
                    summary = await engine.run(trigger, ticket_id, message_id)
                    await db.commit()
        except Exception:
            logger.error(
                "automation_dispatcher: run failed trigger=%s ticket=%s message=%s",
                trigger, ticket_id, message_id, exc_info=True,
            )
            return None

        matched = sum(1 for result in summary.results if result.matched)
        logger.info(
            "automation_dispatcher: trigger=%s ticket=%s rules=%d matched=%d",
            trigger, ticket_id, len(summary.results), matched,
        )
        return summary

    async def on_ticket_created(self, ticket_id: str) -> Optional[AutomationRunSummary]:
        return await self.dispatch("TICKET_CREATED", ticket_id)

    async def on_message_received(
        self, ticket_id: str, message_id: Optional[str] = None
    ) -> Optional[AutomationRunSummary]:
        return await self.dispatch("MESSAGE_RECEIVED", ticket_id, message_id)

    async def on_ticket_status_changed(self, ticket_id: str) -> Optional[AutomationRunSummary]:
        return await self.dispatch("TICKET_STATUS_CHANGED", ticket_id)
