"""Tag store: validate tag ids and attach them to tickets."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.models.tag import Tag, TicketTag


class InvalidTagError(Exception):
    """Raised when one or more tag ids do not exist."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Unknown tag ids: {', '.join(self.missing)}")


def normalize_ids(ids: Iterable[str]) -> List[str]:
    """Trim, drop blanks and de-duplicate while keeping the given order."""
    seen = set()
    result = []
    for value in ids:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class TagStore(ABC):

    @abstractmethod
    async def attach(self, ticket_id: str, tag_ids: Iterable[str]) -> List[str]:
        """Attach tags (union with the existing ones) and return the newly added ids.

        Raises InvalidTagError when any id is unknown; nothing is attached then.
        """

    @abstractmethod
    async def missing_tag_ids(self, tag_ids: Iterable[str]) -> List[str]:
        ...


class SqlTagStore(TagStore):

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def missing_tag_ids(self, tag_ids: Iterable[str]) -> List[str]:
        ids = normalize_ids(tag_ids)
        if not ids:
            return []
        result = await self.db.execute(select(Tag.id).where(Tag.id.in_(ids)))
        found = set(result.scalars().all())
        return [tag_id for tag_id in ids if tag_id not in found]

    async def attach(self, ticket_id: str, tag_ids: Iterable[str]) -> List[str]:
        ids = normalize_ids(tag_ids)
        if not ids:
            return []

        missing = await self.missing_tag_ids(ids)
        if missing:
            raise InvalidTagError(missing)

        result = await self.db.execute(select(TicketTag.tag_id).where(TicketTag.ticket_id == ticket_id))
        current = set(result.scalars().all())
        to_add = [tag_id for tag_id in ids if tag_id not in current]
        for tag_id in to_add:
            self.db.add(TicketTag(ticket_id=ticket_id, tag_id=tag_id))
        if to_add:
            await self.db.flush()
        return to_add
