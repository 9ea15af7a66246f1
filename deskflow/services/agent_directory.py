"""Agent directory: who can take a ticket and how loaded they are."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.models.agent import Agent
from deskflow.models.queue import QueueAgent
from deskflow.models.ticket import OPEN_TICKET_STATUSES, Ticket


@dataclass(frozen=True)
class AgentInfo:
    id: str
    name: str
    max_tickets: Optional[int] = None


class AgentDirectory(ABC):

    @abstractmethod
    async def list_agents(self, agent_ids: Optional[Iterable[str]] = None) -> List[AgentInfo]:
        """Active agents; restricted to ``agent_ids`` when given."""

    @abstractmethod
    async def list_queue_agent_ids(self, queue_id: str) -> List[str]:
        ...

    @abstractmethod
    async def count_open_tickets(self, agent_ids: Iterable[str]) -> Dict[str, int]:
        """Open (PENDING/OPEN) ticket count per agent id; agents without tickets may be absent."""


class SqlAgentDirectory(AgentDirectory):

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_agents(self, agent_ids: Optional[Iterable[str]] = None) -> List[AgentInfo]:
        stmt = select(Agent).where(Agent.is_active.is_(True))
        if agent_ids is not None:
            ids = list(agent_ids)
            if not ids:
                return []
            stmt = stmt.where(Agent.id.in_(ids))
        result = await self.db.execute(stmt.order_by(Agent.id))
        return [
            AgentInfo(id=agent.id, name=agent.name, max_tickets=agent.max_tickets)
            for agent in result.scalars().all()
        ]

    async def list_queue_agent_ids(self, queue_id: str) -> List[str]:
        result = await self.db.execute(
            select(QueueAgent.agent_id).where(QueueAgent.queue_id == queue_id)
        )
        return list(result.scalars().all())

    async def count_open_tickets(self, agent_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(agent_ids)
        if not ids:
            return {}
        result = await self.db.execute(
            select(Ticket.agent_id, func.count(Ticket.id))
            .where(Ticket.agent_id.in_(ids), Ticket.status.in_(OPEN_TICKET_STATUSES))
            .group_by(Ticket.agent_id)
        )
        return {agent_id: int(count) for agent_id, count in result.all()}
