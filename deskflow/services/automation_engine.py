"""Automation rule engine.

Runs the active rules of a trigger against one ticket:

1. load rules (priority desc, then creation order) through the rule cache,
2. load the context (ticket snapshot, optional message, ``now``),
3. per rule: evaluate conditions, execute actions in order, record the
   outcome and write one audit entry,
4. stop early when a matched rule has ``stop_on_match``.

Everything runs sequentially inside one invocation. Actions of a matched rule
see the ticket as left by the previous action; the next rule sees the ticket
as left by the previous matched rule.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.config import Settings, get_settings
from deskflow.schemas.automation import AutomationRunSummary, RuleExecutionSummary
from deskflow.services.agent_directory import SqlAgentDirectory
from deskflow.services.automation_actions import ActionExecutor
from deskflow.services.automation_conditions import (
    DEFAULT_TIMEZONE,
    ConditionEvaluationError,
    matches_all,
)
from deskflow.services.automation_context import AutomationContext
from deskflow.services.automation_log import AuditStore, SqlAuditStore
from deskflow.services.automation_metrics import (
    AUTOMATION_ACTIONS_TOTAL,
    AUTOMATION_RULE_EVALUATIONS_TOTAL,
    AUTOMATION_RUN_DURATION_SECONDS,
    AUTOMATION_RUNS_TOTAL,
)
from deskflow.services.automation_rules import RuleCache, RuleRecord, RuleRepository
from deskflow.services.survey_dispatcher import SurveyDispatcher
from deskflow.services.tag_store import SqlTagStore
from deskflow.services.ticket_store import SqlTicketStore, TicketStore
from deskflow.services.webhook_client import WebhookClient

logger = logging.getLogger(__name__)

TICKET_NOT_FOUND = "Ticket not found"
RULE_NOT_FOUND = "Rule not found"
RULE_INACTIVE = "Rule is inactive"
CONDITIONS_NOT_MET = "Conditions not met"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_message(result: RuleExecutionSummary) -> str:
    if result.actions:
        return ", ".join(f"{action.type}:{action.status}" for action in result.actions)
    return result.error or CONDITIONS_NOT_MET


class AutomationEngine:
    """Evaluates rules for one trigger/ticket and executes matched actions."""

    def __init__(
        self,
        *,
        rules: RuleRepository,
        tickets: TicketStore,
        executor: ActionExecutor,
        audit: Optional[AuditStore] = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.rules = rules
        self.tickets = tickets
        self.executor = executor
        self.audit = audit
        self.default_timezone = default_timezone
        self.clock = clock

    async def run(
        self,
        trigger: str,
        ticket_id: str,
        message_id: Optional[str] = None,
        *,
        dry_run: bool = False,
        rule_id: Optional[str] = None,
        write_log: bool = True,
    ) -> AutomationRunSummary:
        """Run automations for ``trigger`` on ``ticket_id``.

        With ``rule_id`` only that rule is evaluated (active or not); the
        caller is responsible for checking it belongs to ``trigger``.

        Raises:
            RuleLoadError: rules could not be loaded.
        """
        started = time.perf_counter()
        outcome = "error"
        try:
            if rule_id is not None:
                record = await self.rules.get_record(rule_id)
                rules = [record] if record is not None else []
            else:
                rules = await self.rules.load_active(trigger)

            summary = await self._run_rules(
                trigger, rules, ticket_id, message_id, dry_run=dry_run, write_log=write_log
            )
            outcome = "ok"
            return summary
        finally:
            AUTOMATION_RUNS_TOTAL.labels(trigger=trigger, outcome=outcome).inc()
            AUTOMATION_RUN_DURATION_SECONDS.labels(trigger=trigger).observe(time.perf_counter() - started)

    async def test_rule(
        self,
        rule_id: str,
        ticket_id: str,
        message_id: Optional[str] = None,
        *,
        dry_run: bool = True,
    ) -> AutomationRunSummary:
        """Run a single rule against a ticket under the rule's own trigger.

        Active-rule selection is bypassed, so inactive rules can be tried in a
        dry run. A dry run writes no audit entries; a live test is audited like
        a dispatched run.
        """
        record = await self.rules.get_record(rule_id)
        if record is None:
            return AutomationRunSummary(
                trigger="UNKNOWN",
                ticket_id=ticket_id,
                results=[RuleExecutionSummary(rule_id=rule_id, error=RULE_NOT_FOUND)],
            )
        if not dry_run and not record.is_active:
            return AutomationRunSummary(
                trigger=record.trigger,
                ticket_id=ticket_id,
                results=[RuleExecutionSummary(rule_id=record.id, error=RULE_INACTIVE)],
            )

        logger.info(
            "automation_engine: testing rule=%s ticket=%s dry_run=%s", rule_id, ticket_id, dry_run
        )
        return await self.run(
            record.trigger,
            ticket_id,
            message_id,
            dry_run=dry_run,
            rule_id=record.id,
            write_log=not dry_run,
        )

    # -- internals ----------------------------------------------------------

    async def _run_rules(
        self,
        trigger: str,
        rules: List[RuleRecord],
        ticket_id: str,
        message_id: Optional[str],
        *,
        dry_run: bool,
        write_log: bool,
    ) -> AutomationRunSummary:
        summary = AutomationRunSummary(trigger=trigger, ticket_id=ticket_id)
        if not rules:
            return summary

        log_context = {"ticketId": ticket_id, "messageId": message_id, "dryRun": dry_run}

        ticket = await self.tickets.get_snapshot(ticket_id)
        if ticket is None:
            logger.warning("automation_engine: ticket=%s not found trigger=%s", ticket_id, trigger)
            for rule in rules:
                result = RuleExecutionSummary(rule_id=rule.id, error=TICKET_NOT_FOUND)
                summary.results.append(result)
                await self._record(trigger, rule, "FAILED", result, log_context, write_log)
            return summary

        message = await self.tickets.get_message(message_id) if message_id else None
        context = AutomationContext(trigger=trigger, ticket=ticket, message=message, now=self.clock())

        for rule in rules:
            result = RuleExecutionSummary(rule_id=rule.id)
            summary.results.append(result)

            try:
                matched = matches_all(rule.conditions, context, default_timezone=self.default_timezone)
            except ConditionEvaluationError as exc:
                logger.warning(
                    "automation_engine: rule=%s condition error ticket=%s: %s", rule.id, ticket_id, exc
                )
                result.error = str(exc)
                await self._record(trigger, rule, "FAILED", result, log_context, write_log)
                continue

            if not matched:
                await self._record(trigger, rule, "SKIPPED", result, log_context, write_log)
                continue

            result.matched = True
            for raw_action in rule.actions:
                outcome = await self.executor.execute(raw_action, context, dry_run=dry_run)
                result.actions.append(outcome.result)
                AUTOMATION_ACTIONS_TOTAL.labels(
                    action_type=outcome.result.type, status=outcome.result.status
                ).inc()
                if outcome.ticket_changed and not dry_run:
                    context = await self._refresh(context, ticket_id)

            failed = [action for action in result.actions if action.status == "failed"]
            if failed:
                result.error = failed[0].details or f"{failed[0].type} failed"
            status = "FAILED" if failed else "SUCCESS"

            if not dry_run:
                await self.rules.mark_executed(rule.id, context.now)
                context = await self._refresh(context, ticket_id)

            if rule.stop_on_match:
                result.stop_processing = True

            logger.info(
                "automation_engine: rule=%s matched ticket=%s status=%s actions=%s",
                rule.id, ticket_id, status, _log_message(result),
            )
            await self._record(trigger, rule, status, result, log_context, write_log)

            if rule.stop_on_match:
                break

        return summary

    async def _refresh(self, context: AutomationContext, ticket_id: str) -> AutomationContext:
        ticket = await self.tickets.get_snapshot(ticket_id)
        return context.with_ticket(ticket) if ticket is not None else context

    async def _record(
        self,
        trigger: str,
        rule: RuleRecord,
        status: str,
        result: RuleExecutionSummary,
        log_context: dict,
        write_log: bool,
    ) -> None:
        AUTOMATION_RULE_EVALUATIONS_TOTAL.labels(trigger=trigger, status=status).inc()
        if not write_log or self.audit is None:
            return
        context: Any = dict(log_context, result=result.model_dump(mode="json", by_alias=True))
        try:
            await self.audit.append(
                trigger=trigger,
                status=status,
                rule_id=rule.id,
                message=_log_message(result),
                error=result.error,
                context=context,
            )
        except Exception:
            logger.error(
                "automation_engine: failed to write audit entry rule=%s status=%s",
                rule.id, status, exc_info=True,
            )


def build_engine(
    db: AsyncSession,
    *,
    rule_cache: Optional[RuleCache] = None,
    webhook_client: Optional[WebhookClient] = None,
    survey_dispatcher: Optional[SurveyDispatcher] = None,
    settings: Optional[Settings] = None,
) -> AutomationEngine:
    """Wire an engine with the SQL-backed collaborators on ``db``."""
    settings = settings or get_settings()
    tickets = SqlTicketStore(db)
    executor = ActionExecutor(
        tickets=tickets,
        agents=SqlAgentDirectory(db),
        tags=SqlTagStore(db),
        surveys=survey_dispatcher,
        webhooks=webhook_client,
        survey_timeout_seconds=settings.AUTOMATION_SURVEY_TIMEOUT_SECONDS,
    )
    return AutomationEngine(
        rules=RuleRepository(db, rule_cache),
        tickets=tickets,
        executor=executor,
        audit=SqlAuditStore(
            db,
            default_limit=settings.AUTOMATION_LOG_DEFAULT_LIMIT,
            max_limit=settings.AUTOMATION_LOG_MAX_LIMIT,
        ),
        default_timezone=settings.AUTOMATION_DEFAULT_TIMEZONE,
    )
