"""Tests for the automation action executor.

Collaborators are the SQL implementations on a SQLite test database; outbound
webhook calls go through httpx.MockTransport.

Run with: pytest tests/test_automation_actions.py -v
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from deskflow.services.agent_directory import SqlAgentDirectory
from deskflow.services.automation_actions import ActionExecutor, render_template
from deskflow.services.automation_context import AutomationContext
from deskflow.services.survey_dispatcher import SurveyDispatcher
from deskflow.services.tag_store import SqlTagStore, normalize_ids
from deskflow.services.ticket_store import SqlTicketStore, TicketSnapshot
from deskflow.services.webhook_client import WebhookClient

NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


def _executor(db, *, surveys=None, webhooks=None, survey_timeout_seconds=1.0) -> ActionExecutor:
    return ActionExecutor(
        tickets=SqlTicketStore(db),
        agents=SqlAgentDirectory(db),
        tags=SqlTagStore(db),
        surveys=surveys,
        webhooks=webhooks,
        survey_timeout_seconds=survey_timeout_seconds,
    )


async def _context(db, ticket_id: str, message_id: Optional[str] = None) -> AutomationContext:
    store = SqlTicketStore(db)
    ticket = await store.get_snapshot(ticket_id)
    message = await store.get_message(message_id) if message_id else None
    return AutomationContext(trigger="MESSAGE_RECEIVED", ticket=ticket, message=message, now=NOW)


async def _snapshot(db, ticket_id: str) -> TicketSnapshot:
    return await SqlTicketStore(db).get_snapshot(ticket_id)


# ---------------------------------------------------------------------------
# assign_agent
# ---------------------------------------------------------------------------


class TestAssignAgent:

    async def test_least_tickets_picks_less_loaded_agent(self, db, seed):
        await seed.agent("a")
        await seed.agent("b")
        await seed.open_tickets("a", 3)
        await seed.open_tickets("b", 1)
        await seed.ticket("t1", status="PENDING")

        outcome = await _executor(db).execute(
            {"type": "assign_agent", "agentIds": ["a", "b"]}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert outcome.ticket_changed
        ticket = await _snapshot(db, "t1")
        assert ticket.agent_id == "b"
        assert ticket.status == "OPEN"

    async def test_agent_ids_trimmed_and_deduplicated(self, db, seed):
        await seed.agent("a")
        await seed.ticket("t1")

        outcome = await _executor(db).execute(
            {"type": "assign_agent", "agentIds": [" a ", "a", ""]}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert (await _snapshot(db, "t1")).agent_id == "a"
        assert normalize_ids([" a ", "a", "", "b"]) == ["a", "b"]

    async def test_ties_broken_by_agent_id(self, db, seed):
        await seed.agent("b")
        await seed.agent("a")
        await seed.ticket("t1")

        outcome = await _executor(db).execute({"type": "assign_agent"}, await _context(db, "t1"))

        assert outcome.result.status == "performed"
        assert (await _snapshot(db, "t1")).agent_id == "a"

    async def test_whole_directory_excludes_inactive_agents(self, db, seed):
        await seed.agent("a")
        await seed.agent("b", is_active=False)
        await seed.open_tickets("a", 5)
        await seed.ticket("t1")

        await _executor(db).execute({"type": "assign_agent"}, await _context(db, "t1"))

        assert (await _snapshot(db, "t1")).agent_id == "a"

    async def test_queue_agents_used_when_ticket_has_queue(self, db, seed):
        await seed.agent("a")
        await seed.agent("b")
        await seed.open_tickets("b", 2)
        await seed.queue("q1", agent_ids=["b"])
        await seed.ticket("t1", queue_id="q1")

        await _executor(db).execute({"type": "assign_agent"}, await _context(db, "t1"))

        assert (await _snapshot(db, "t1")).agent_id == "b"

    async def test_queue_agents_ignored_when_disabled(self, db, seed):
        await seed.agent("a")
        await seed.agent("b")
        await seed.open_tickets("b", 2)
        await seed.queue("q1", agent_ids=["b"])
        await seed.ticket("t1", queue_id="q1")

        await _executor(db).execute(
            {"type": "assign_agent", "includeQueueAgents": False}, await _context(db, "t1")
        )

        assert (await _snapshot(db, "t1")).agent_id == "a"

    async def test_action_capacity_limit(self, db, seed):
        await seed.agent("a")
        await seed.agent("b")
        await seed.open_tickets("a", 1)
        await seed.open_tickets("b", 1)
        await seed.ticket("t1")

        outcome = await _executor(db).execute(
            {"type": "assign_agent", "maxTicketsPerAgent": 1}, await _context(db, "t1")
        )

        assert outcome.result.status == "skipped"
        assert "capacity" in outcome.result.details
        assert (await _snapshot(db, "t1")).agent_id is None

    async def test_agent_own_capacity_used_without_action_limit(self, db, seed):
        await seed.agent("a", max_tickets=1)
        await seed.agent("b")
        await seed.open_tickets("a", 1)
        await seed.open_tickets("b", 3)
        await seed.ticket("t1")

        await _executor(db).execute({"type": "assign_agent"}, await _context(db, "t1"))

        assert (await _snapshot(db, "t1")).agent_id == "b"

    async def test_empty_pool_is_skipped(self, db, seed):
        await seed.ticket("t1")

        outcome = await _executor(db).execute(
            {"type": "assign_agent", "agentIds": ["ghost"]}, await _context(db, "t1")
        )

        assert outcome.result.status == "skipped"
        assert outcome.result.details == "No eligible agents found"

    async def test_already_assigned_to_selected_agent_is_skipped(self, db, seed):
        await seed.agent("a")
        await seed.ticket("t1", agent_id="a", status="OPEN")

        outcome = await _executor(db).execute({"type": "assign_agent"}, await _context(db, "t1"))

        assert outcome.result.status == "skipped"
        assert not outcome.ticket_changed

    async def test_dry_run_does_not_assign(self, db, seed):
        await seed.agent("a")
        await seed.ticket("t1", status="PENDING")

        outcome = await _executor(db).execute(
            {"type": "assign_agent"}, await _context(db, "t1"), dry_run=True
        )

        assert outcome.result.status == "performed"
        assert "would be assigned" in outcome.result.details
        ticket = await _snapshot(db, "t1")
        assert ticket.agent_id is None
        assert ticket.status == "PENDING"


# ---------------------------------------------------------------------------
# assign_queue / apply_tags
# ---------------------------------------------------------------------------


class TestAssignQueue:

    async def test_moves_ticket(self, db, seed):
        await seed.queue("q1")
        await seed.queue("q2")
        await seed.ticket("t1", queue_id="q1")

        outcome = await _executor(db).execute(
            {"type": "assign_queue", "queueId": "q2"}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert (await _snapshot(db, "t1")).queue_id == "q2"

    async def test_unknown_queue_fails(self, db, seed):
        await seed.ticket("t1")

        outcome = await _executor(db).execute(
            {"type": "assign_queue", "queueId": "missing"}, await _context(db, "t1")
        )

        assert outcome.result.status == "failed"
        assert "not found" in outcome.result.details

    async def test_same_queue_is_performed_noop(self, db, seed):
        await seed.queue("q1")
        await seed.ticket("t1", queue_id="q1")

        outcome = await _executor(db).execute(
            {"type": "assign_queue", "queueId": "q1"}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert not outcome.ticket_changed


class TestApplyTags:

    async def test_union_with_existing_tags(self, db, seed):
        await seed.tag("vip")
        await seed.tag("urgent")
        await seed.ticket("t1", tag_ids=["vip"])

        outcome = await _executor(db).execute(
            {"type": "apply_tags", "tagIds": ["urgent", "vip"]}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert (await _snapshot(db, "t1")).tag_ids == ("urgent", "vip")

    async def test_reapplying_is_noop_success(self, db, seed):
        await seed.tag("vip")
        await seed.ticket("t1", tag_ids=["vip"])

        outcome = await _executor(db).execute(
            {"type": "apply_tags", "tagIds": ["vip"]}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert not outcome.ticket_changed

    async def test_unknown_tag_fails_and_attaches_nothing(self, db, seed):
        await seed.tag("vip")
        await seed.ticket("t1")

        outcome = await _executor(db).execute(
            {"type": "apply_tags", "tagIds": ["vip", "ghost"]}, await _context(db, "t1")
        )

        assert outcome.result.status == "failed"
        assert "ghost" in outcome.result.details
        assert (await _snapshot(db, "t1")).tag_ids == ()


# ---------------------------------------------------------------------------
# close_ticket
# ---------------------------------------------------------------------------


class _SlowSurveyDispatcher(SurveyDispatcher):
    async def trigger_survey(self, ticket_id: str) -> Optional[str]:
        await asyncio.sleep(1)
        return None


class TestCloseTicket:

    async def test_closes_and_resets_unread(self, db, seed):
        await seed.ticket("t1", status="OPEN", unread_messages=4)

        outcome = await _executor(db).execute(
            {"type": "close_ticket", "reason": "Resolved by automation"}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        ticket = await _snapshot(db, "t1")
        assert ticket.status == "CLOSED"
        assert ticket.unread_messages == 0
        assert ticket.closed_at is not None

    async def test_already_closed_is_skipped(self, db, seed):
        await seed.ticket("t1", status="CLOSED")

        outcome = await _executor(db).execute({"type": "close_ticket"}, await _context(db, "t1"))

        assert outcome.result.status == "skipped"

    async def test_requests_survey(self, db, seed, surveys):
        await seed.ticket("t1", status="OPEN")

        outcome = await _executor(db, surveys=surveys).execute(
            {"type": "close_ticket", "applySurvey": True}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert "Satisfaction survey requested" in outcome.result.details
        assert surveys.calls == ["t1"]

    async def test_survey_failure_does_not_fail_action(self, db, seed, failing_surveys):
        await seed.ticket("t1", status="OPEN")

        outcome = await _executor(db, surveys=failing_surveys).execute(
            {"type": "close_ticket", "applySurvey": True}, await _context(db, "t1")
        )

        assert outcome.result.status == "performed"
        assert "Survey dispatch failed" in outcome.result.details
        assert (await _snapshot(db, "t1")).status == "CLOSED"

    async def test_survey_timeout_is_bounded(self, db, seed):
        await seed.ticket("t1", status="OPEN")
        executor = _executor(db, surveys=_SlowSurveyDispatcher(), survey_timeout_seconds=0.05)

        started = time.perf_counter()
        outcome = await executor.execute(
            {"type": "close_ticket", "applySurvey": True}, await _context(db, "t1")
        )

        assert time.perf_counter() - started < 0.9
        assert outcome.result.status == "performed"
        assert "timed out" in outcome.result.details

    async def test_dry_run_does_not_close(self, db, seed, surveys):
        await seed.ticket("t1", status="OPEN")

        outcome = await _executor(db, surveys=surveys).execute(
            {"type": "close_ticket", "applySurvey": True}, await _context(db, "t1"), dry_run=True
        )

        assert outcome.result.status == "performed"
        assert (await _snapshot(db, "t1")).status == "OPEN"
        assert surveys.calls == []


# ---------------------------------------------------------------------------
# trigger_webhook
# ---------------------------------------------------------------------------


class TestTriggerWebhook:

    async def test_renders_json_template(self, db, seed):
        contact = await seed.contact("Maria Souza")
        await seed.ticket("t1", contact_id=contact.id)
        message = await seed.message("t1", "preciso de ajuda")
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["json"] = json.loads(request.content)
            captured["headers"] = request.headers
            return httpx.Response(200, json={"ok": True})

        webhooks = WebhookClient(transport=httpx.MockTransport(handler))
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {
                    "type": "trigger_webhook",
                    "url": "https://hooks.example.com/tickets",
                    "headers": {"X-Token": "abc"},
                    "bodyTemplate": (
                        '{"ticket": "{{ ticket.id }}", "contact": "{{ticket.contact.name}}", '
                        '"text": "{{ message.body }}", "missing": "{{ ticket.nope }}"}'
                    ),
                },
                await _context(db, "t1", message.id),
            )
        finally:
            await webhooks.aclose()

        assert outcome.result.status == "performed"
        assert captured["method"] == "POST"
        assert captured["url"] == "https://hooks.example.com/tickets"
        assert captured["headers"]["x-token"] == "abc"
        assert captured["json"] == {
            "ticket": "t1",
            "contact": "Maria Souza",
            "text": "preciso de ajuda",
            "missing": "",
        }

    async def test_without_template_sends_full_context(self, db, seed):
        await seed.ticket("t1", priority="HIGH")
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["json"] = json.loads(request.content)
            return httpx.Response(204)

        webhooks = WebhookClient(transport=httpx.MockTransport(handler))
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {"type": "trigger_webhook", "url": "https://hooks.example.com/x"},
                await _context(db, "t1"),
            )
        finally:
            await webhooks.aclose()

        assert outcome.result.status == "performed"
        assert set(captured["json"]) == {"trigger", "ticket", "message", "now"}
        assert captured["json"]["ticket"]["priority"] == "HIGH"
        assert captured["json"]["message"] is None

    async def test_non_json_template_sent_as_text(self, db, seed):
        await seed.ticket("t1")
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content.decode()
            return httpx.Response(200)

        webhooks = WebhookClient(transport=httpx.MockTransport(handler))
        try:
            await _executor(db, webhooks=webhooks).execute(
                {
                    "type": "trigger_webhook",
                    "url": "https://hooks.example.com/x",
                    "method": "put",
                    "bodyTemplate": "ticket {{ ticket.id }} is {{ ticket.status }}",
                },
                await _context(db, "t1"),
            )
        finally:
            await webhooks.aclose()

        assert captured["body"] == "ticket t1 is PENDING"

    async def test_get_sends_query_params(self, db, seed):
        await seed.ticket("t1")
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["params"] = dict(request.url.params)
            captured["content"] = request.content
            return httpx.Response(200)

        webhooks = WebhookClient(transport=httpx.MockTransport(handler))
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {
                    "type": "trigger_webhook",
                    "url": "https://hooks.example.com/x",
                    "method": "GET",
                    "bodyTemplate": '{"ticketId": "{{ ticket.id }}", "status": "{{ ticket.status }}"}',
                },
                await _context(db, "t1"),
            )
        finally:
            await webhooks.aclose()

        assert outcome.result.status == "performed"
        assert captured["params"] == {"ticketId": "t1", "status": "PENDING"}
        assert captured["content"] == b""

    async def test_non_2xx_fails(self, db, seed):
        await seed.ticket("t1")
        webhooks = WebhookClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {"type": "trigger_webhook", "url": "https://hooks.example.com/x"},
                await _context(db, "t1"),
            )
        finally:
            await webhooks.aclose()

        assert outcome.result.status == "failed"
        assert "HTTP 500" in outcome.result.details

    async def test_timeout_fails_within_bound(self, db, seed):
        await seed.ticket("t1")

        async def slow_handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.5)
            return httpx.Response(200)

        webhooks = WebhookClient(transport=httpx.MockTransport(slow_handler))
        started = time.perf_counter()
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {"type": "trigger_webhook", "url": "https://hooks.example.com/slow", "timeoutMs": 50},
                await _context(db, "t1"),
            )
        finally:
            await webhooks.aclose()

        assert time.perf_counter() - started < 0.45
        assert outcome.result.status == "failed"
        assert "timed out after 50ms" in outcome.result.details

    async def test_dry_run_makes_no_call(self, db, seed):
        await seed.ticket("t1")
        handler = AsyncMock(return_value=httpx.Response(200))
        webhooks = WebhookClient(transport=httpx.MockTransport(handler))
        try:
            outcome = await _executor(db, webhooks=webhooks).execute(
                {"type": "trigger_webhook", "url": "https://hooks.example.com/x"},
                await _context(db, "t1"),
                dry_run=True,
            )
        finally:
            await webhooks.aclose()

        assert outcome.result.status == "performed"
        assert "would be sent" in outcome.result.details
        handler.assert_not_called()


# ---------------------------------------------------------------------------
# Error conversion
# ---------------------------------------------------------------------------


class TestErrorConversion:

    async def test_invalid_action_payload_fails(self, db, seed):
        await seed.ticket("t1")

        outcome = await _executor(db).execute({"type": "send_sms", "to": "+55"}, await _context(db, "t1"))

        assert outcome.result.status == "failed"
        assert outcome.result.type == "send_sms"
        assert outcome.result.details.startswith("Invalid action")

    async def test_unexpected_collaborator_error_becomes_failed(self, db, seed):
        await seed.ticket("t1")
        context = await _context(db, "t1")
        tickets = AsyncMock()
        tickets.queue_exists.side_effect = RuntimeError("db down")
        executor = ActionExecutor(tickets=tickets, agents=AsyncMock(), tags=AsyncMock())

        outcome = await executor.execute({"type": "assign_queue", "queueId": "q1"}, context)

        assert outcome.result.status == "failed"
        assert "db down" in outcome.result.details


def test_render_template_missing_and_nested_values():
    context = {"ticket": {"id": "t1", "tagIds": ["a"], "contact": None}, "now": "2026-10-19"}

    assert render_template("{{ticket.id}}/{{ ticket.contact.name }}", context) == "t1/"
    assert render_template("{{ ticket.tagIds }}", context) == '["a"]'
    assert render_template("no tokens", context) == "no tokens"
