"""
Pytest configuration and fixtures for deskflow automation tests.

Uses a throwaway SQLite (aiosqlite) database; tables are recreated for every
test that requests ``db`` or ``client``.
"""
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

# Set required env vars BEFORE importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_deskflow.db"
os.environ["SENTRY_DSN"] = ""
os.environ["CELERY_BROKER_URL"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.database import AsyncSessionLocal, Base, engine
from deskflow.models import Agent, AutomationRule, Contact, Message, Queue, QueueAgent, Tag, Ticket, TicketTag
from deskflow.schemas.automation import AutomationRuleCreate
from deskflow.services.automation_rules import RuleRepository
from deskflow.services.survey_dispatcher import SurveyDispatchError, SurveyDispatcher

TEST_DB_PATH = Path("./test_deskflow.db")


class RecordingSurveyDispatcher(SurveyDispatcher):
    """Survey dispatcher double: records ticket ids, optionally fails."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[str] = []

    async def trigger_survey(self, ticket_id: str) -> Optional[str]:
        self.calls.append(ticket_id)
        if self.fail:
            raise SurveyDispatchError("survey service unavailable")
        return f"survey-{ticket_id}"


class Seeder:
    """Creates collaborator rows and rules for a test."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        await self.db.refresh(obj)
        return obj

    async def contact(self, name: str = "Maria Souza", **fields) -> Contact:
        return await self._save(Contact(name=name, **fields))

    async def agent(self, agent_id: str, name: Optional[str] = None, **fields) -> Agent:
        return await self._save(Agent(id=agent_id, name=name or f"Agent {agent_id}", **fields))

    async def queue(self, queue_id: str, name: Optional[str] = None, agent_ids: Iterable[str] = ()) -> Queue:
        queue = await self._save(Queue(id=queue_id, name=name or f"Queue {queue_id}"))
        for agent_id in agent_ids:
            self.db.add(QueueAgent(queue_id=queue_id, agent_id=agent_id))
        await self.db.commit()
        return queue

    async def tag(self, tag_id: str, name: Optional[str] = None) -> Tag:
        return await self._save(Tag(id=tag_id, name=name or tag_id))

    async def ticket(self, ticket_id: Optional[str] = None, tag_ids: Iterable[str] = (), **fields) -> Ticket:
        if ticket_id is not None:
            fields["id"] = ticket_id
        ticket = await self._save(Ticket(**fields))
        for tag_id in tag_ids:
            self.db.add(TicketTag(ticket_id=ticket.id, tag_id=tag_id))
        await self.db.commit()
        return ticket

    async def open_tickets(self, agent_id: str, count: int) -> None:
        for _ in range(count):
            self.db.add(Ticket(agent_id=agent_id, status="OPEN"))
        await self.db.commit()

    async def message(self, ticket_id: str, body: Optional[str], **fields) -> Message:
        return await self._save(Message(ticket_id=ticket_id, body=body, **fields))

    async def rule(
        self,
        name: str,
        *,
        trigger: str = "MESSAGE_RECEIVED",
        conditions: Optional[List[Dict[str, Any]]] = None,
        actions: Optional[List[Dict[str, Any]]] = None,
        **fields,
    ) -> AutomationRule:
        payload = AutomationRuleCreate.model_validate(
            {
                "name": name,
                "trigger": trigger,
                "conditions": conditions or [],
                "actions": actions or [{"type": "apply_tags", "tagIds": ["t-default"]}],
                **fields,
            }
        )
        return await RuleRepository(self.db).create(payload)

    async def raw_rule(self, name: str, *, trigger: str, conditions: list, actions: list, **fields) -> AutomationRule:
        """Insert a rule bypassing validation (simulates legacy/corrupted rows)."""
        return await self._save(
            AutomationRule(name=name, trigger=trigger, conditions=conditions, actions=actions, **fields)
        )


@pytest_asyncio.fixture
async def fresh_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db(fresh_schema) -> AsyncSession:
    """Async SQLite session for isolated testing."""
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def client(fresh_schema) -> AsyncClient:
    """HTTP client bound to the app in-process; rule cache starts empty."""
    from deskflow.main import app

    app.state.rule_cache.invalidate()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.state.rule_cache.invalidate()
    app.dependency_overrides.clear()


@pytest.fixture
def seed(db: AsyncSession) -> Seeder:
    return Seeder(db)


@pytest.fixture
def surveys() -> RecordingSurveyDispatcher:
    return RecordingSurveyDispatcher()


@pytest.fixture
def failing_surveys() -> RecordingSurveyDispatcher:
    return RecordingSurveyDispatcher(fail=True)


def pytest_sessionfinish(session, exitstatus):
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()
