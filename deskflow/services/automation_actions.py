"""Action executor for automation rules.

One handler per action variant. Each handler performs at most one side
effect through a collaborator (ticket store, agent directory, tag store,
survey dispatcher, webhook client) and reports ``performed``, ``skipped`` or
``failed``. Collaborator errors never escape ``ActionExecutor.execute``: they
become a ``failed`` result carrying the error text, so sibling actions of the
same rule keep running.

In dry-run mode (rule testing) nothing is mutated and no outbound call is
made; handlers describe what they would have done.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from deskflow.schemas.automation import (
    ActionResult,
    ApplyTagsAction,
    AssignAgentAction,
    AssignQueueAction,
    CloseTicketAction,
    TriggerWebhookAction,
    action_adapter,
)
from deskflow.services.agent_directory import AgentDirectory
from deskflow.services.automation_context import AutomationContext
from deskflow.services.survey_dispatcher import SurveyDispatchError, SurveyDispatcher, start_survey_task
from deskflow.services.tag_store import TagStore, normalize_ids
from deskflow.services.ticket_store import TicketStore
from deskflow.services.webhook_client import WebhookClient, WebhookError

logger = logging.getLogger(__name__)

_TEMPLATE_TOKEN_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


class ActionExecutionError(Exception):
    """An action could not be carried out (collaborator failure, missing entity, timeout)."""


@dataclass
class ActionOutcome:
    result: ActionResult
    ticket_changed: bool = False


def _performed(action_type: str, details: str, *, changed: bool = False) -> ActionOutcome:
    return ActionOutcome(ActionResult(type=action_type, status="performed", details=details), changed)


def _skipped(action_type: str, details: str) -> ActionOutcome:
    return ActionOutcome(ActionResult(type=action_type, status="skipped", details=details))


def _failed(action_type: str, details: str) -> ActionOutcome:
    return ActionOutcome(ActionResult(type=action_type, status="failed", details=details))


# ---------------------------------------------------------------------------
# Webhook templating
# ---------------------------------------------------------------------------


def get_nested_value(source: Any, path: str) -> Any:
    """Resolve a dotted path ('ticket.contact.name') in nested dicts."""
    current = source
    for segment in path.split("."):
        segment = segment.strip()
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{ dotted.path }}`` tokens; missing values render as ''."""

    def _replace(match: "re.Match[str]") -> str:
        value = get_nested_value(context, match.group(1))
        if value is None:
            return ""
        if isinstance(value, (dict, list, bool)):
            return json.dumps(value, ensure_ascii=False, default=str)
        return str(value)

    return _TEMPLATE_TOKEN_RE.sub(_replace, template)


def build_webhook_payload(action: TriggerWebhookAction, context: AutomationContext) -> Any:
    """Rendered template parsed as JSON when possible, raw text otherwise;
    the full template context when no template is configured."""
    template_context = context.template_context()
    if not action.body_template:
        return template_context
    rendered = render_template(action.body_template, template_context)
    try:
        return json.loads(rendered)
    except ValueError:
        return rendered


def _query_params(payload: Any) -> Optional[Dict[str, str]]:
    if not isinstance(payload, Mapping):
        return None
    params = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (dict, list, bool)):
            params[str(key)] = json.dumps(value, ensure_ascii=False, default=str)
        else:
            params[str(key)] = str(value)
    return params


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ActionExecutor:
    """Runs a single action against the collaborators it was built with."""

    def __init__(
        self,
        *,
        tickets: TicketStore,
        agents: AgentDirectory,
        tags: TagStore,
        surveys: Optional[SurveyDispatcher] = None,
        webhooks: Optional[WebhookClient] = None,
        survey_timeout_seconds: float = 5.0,
    ) -> None:
        self.tickets = tickets
        self.agents = agents
        self.tags = tags
        self.surveys = surveys
        self.webhooks = webhooks
        self.survey_timeout_seconds = survey_timeout_seconds
        self._handlers: Dict[type, Callable[[Any, AutomationContext, bool], Awaitable[ActionOutcome]]] = {
            AssignAgentAction: self._assign_agent,
            AssignQueueAction: self._assign_queue,
            ApplyTagsAction: self._apply_tags,
            CloseTicketAction: self._close_ticket,
            TriggerWebhookAction: self._trigger_webhook,
        }

    async def execute(
        self,
        action: Union[Mapping[str, Any], BaseModel],
        context: AutomationContext,
        *,
        dry_run: bool = False,
    ) -> ActionOutcome:
        raw_type = action.get("type") if isinstance(action, Mapping) else getattr(action, "type", None)
        action_type = str(raw_type or "unknown")

        try:
            parsed = action if isinstance(action, BaseModel) else action_adapter.validate_python(action)
        except ValidationError as exc:
            message = exc.errors()[0].get("msg", "validation failed")
            logger.warning("automation_actions: invalid action type=%s: %s", action_type, message)
            return _failed(action_type, f"Invalid action: {message}")

        handler = self._handlers.get(type(parsed))
        if handler is None:
            return _failed(action_type, f"Unsupported action type: {action_type}")

        try:
            return await handler(parsed, context, dry_run)
        except ActionExecutionError as exc:
            logger.warning(
                "automation_actions: %s failed ticket=%s: %s",
                action_type, context.ticket.id, exc,
            )
            return _failed(action_type, str(exc))
        except Exception as exc:
            logger.exception(
                "automation_actions: unexpected error in %s ticket=%s",
                action_type, context.ticket.id,
            )
            return _failed(action_type, f"Unexpected error: {exc}")

    # -- assign_agent -------------------------------------------------------

    async def _assign_agent(
        self, action: AssignAgentAction, context: AutomationContext, dry_run: bool
    ) -> ActionOutcome:
        ticket = context.ticket

        pool_ids: Optional[List[str]]
        if action.agent_ids:
            pool_ids = normalize_ids(action.agent_ids)
        elif action.include_queue_agents and ticket.queue_id:
            pool_ids = await self.agents.list_queue_agent_ids(ticket.queue_id)
        else:
            pool_ids = None  # whole directory

        agents = await self.agents.list_agents(pool_ids)
        if not agents:
            return _skipped("assign_agent", "No eligible agents found")

        counts = await self.agents.count_open_tickets(agent.id for agent in agents)

        candidates = []
        for agent in agents:
            current = counts.get(agent.id, 0)
            limit = action.max_tickets_per_agent if action.max_tickets_per_agent is not None else agent.max_tickets
            if limit is not None and current >= limit:
                continue
            candidates.append((current, agent.id, agent))

        if not candidates:
            return _skipped("assign_agent", "All eligible agents are at capacity")

        # LEAST_TICKETS: fewest open tickets, ties by ascending agent id
        _, _, selected = min(candidates, key=lambda item: (item[0], item[1]))

        if ticket.agent_id == selected.id:
            return _skipped("assign_agent", f"Ticket already assigned to agent {selected.name}")

        if dry_run:
            return _performed("assign_agent", f"Ticket would be assigned to agent {selected.name}")

        await self.tickets.assign_agent(ticket.id, selected.id)
        return _performed("assign_agent", f"Ticket assigned to agent {selected.name}", changed=True)

    # -- assign_queue -------------------------------------------------------

    async def _assign_queue(
        self, action: AssignQueueAction, context: AutomationContext, dry_run: bool
    ) -> ActionOutcome:
        if not await self.tickets.queue_exists(action.queue_id):
            raise ActionExecutionError(f"Queue {action.queue_id} not found")

        if context.ticket.queue_id == action.queue_id:
            return _performed("assign_queue", "Ticket already in the target queue")

        if dry_run:
            return _performed("assign_queue", f"Ticket would be moved to queue {action.queue_id}")

        await self.tickets.move_to_queue(context.ticket.id, action.queue_id)
        return _performed("assign_queue", f"Ticket moved to queue {action.queue_id}", changed=True)

    # -- apply_tags ---------------------------------------------------------

    async def _apply_tags(
        self, action: ApplyTagsAction, context: AutomationContext, dry_run: bool
    ) -> ActionOutcome:
        missing = await self.tags.missing_tag_ids(action.tag_ids)
        if missing:
            raise ActionExecutionError(f"Unknown tag ids: {', '.join(missing)}")

        requested = normalize_ids(action.tag_ids)
        if dry_run:
            return _performed("apply_tags", f"{len(requested)} tag(s) would be applied to the ticket")

        added = await self.tags.attach(context.ticket.id, requested)
        if not added:
            return _performed("apply_tags", "Tags already applied to the ticket")
        return _performed("apply_tags", f"Applied {len(added)} tag(s) to the ticket", changed=True)

    # -- close_ticket -------------------------------------------------------

    async def _close_ticket(
        self, action: CloseTicketAction, context: AutomationContext, dry_run: bool
    ) -> ActionOutcome:
        if context.ticket.status == "CLOSED":
            return _skipped("close_ticket", "Ticket is already closed")

        if dry_run:
            details = "Ticket would be closed automatically"
            if action.apply_survey:
                details += " and a satisfaction survey requested"
            return _performed("close_ticket", details)

        await self.tickets.close(context.ticket.id, reason=action.reason)

        details = "Ticket closed automatically."
        if action.apply_survey:
            details += " " + await self._request_survey(context.ticket.id)
        return _performed("close_ticket", details, changed=True)

    async def _request_survey(self, ticket_id: str) -> str:
        if self.surveys is None:
            return "Survey not requested: no survey dispatcher configured."
        task = start_survey_task(self.surveys, ticket_id, timeout_seconds=self.survey_timeout_seconds)
        try:
            await task
        except SurveyDispatchError as exc:
            logger.warning("automation_actions: survey dispatch failed ticket=%s: %s", ticket_id, exc)
            return f"Survey dispatch failed: {exc}"
        return "Satisfaction survey requested."

    # -- trigger_webhook ----------------------------------------------------

    async def _trigger_webhook(
        self, action: TriggerWebhookAction, context: AutomationContext, dry_run: bool
    ) -> ActionOutcome:
        method = action.method
        payload = build_webhook_payload(action, context)

        if dry_run:
            return _performed("trigger_webhook", f"Webhook {method} would be sent to {action.url}")

        if self.webhooks is None:
            raise ActionExecutionError("No webhook client configured")

        send_kwargs: Dict[str, Any] = {
            "method": method,
            "url": action.url,
            "headers": action.headers,
            "timeout_ms": action.timeout_ms,
        }
        if method == "GET":
            send_kwargs["params"] = _query_params(payload)
        elif isinstance(payload, str):
            send_kwargs["text_body"] = payload
        else:
            send_kwargs["json_body"] = payload

        try:
            response = await self.webhooks.send(**send_kwargs)
        except WebhookError as exc:
            raise ActionExecutionError(str(exc)) from exc

        return _performed(
            "trigger_webhook",
            f"Webhook {method} delivered (HTTP {response.status_code}, {response.elapsed_ms}ms)",
        )
