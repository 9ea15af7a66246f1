"""Rule storage and the per-trigger active-rule cache.

``RuleRepository`` wraps CRUD on ``automation_rules`` for the admin API and
loads active rules for the engine. ``RuleCache`` is owned by the application
(one instance on ``app.state``) and every mutating repository call
invalidates it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from deskflow.database import new_uuid, utcnow
from deskflow.models.automation_log import AutomationLog
from deskflow.models.automation_rule import AutomationRule
from deskflow.schemas.automation import AutomationRuleCreate, AutomationRuleUpdate, dump_variant

logger = logging.getLogger(__name__)


class RuleLoadError(Exception):
    """Rules could not be read from the datastore; the automation run is aborted."""


@dataclass(frozen=True)
class RuleRecord:
    """Immutable view of a rule as the engine evaluates it."""

    id: str
    name: str
    trigger: str
    is_active: bool
    priority: int
    stop_on_match: bool
    conditions: Tuple[Dict[str, Any], ...]
    actions: Tuple[Dict[str, Any], ...]
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, rule: AutomationRule) -> "RuleRecord":
        return cls(
            id=rule.id,
            name=rule.name,
            trigger=rule.trigger,
            is_active=bool(rule.is_active),
            priority=rule.priority or 0,
            stop_on_match=bool(rule.stop_on_match),
            conditions=tuple(rule.conditions or ()),
            actions=tuple(rule.actions or ()),
            created_at=rule.created_at,
        )


def _ordering():
    # higher priority first, then creation order
    return (
        AutomationRule.priority.desc(),
        AutomationRule.created_at.asc(),
        AutomationRule.id.asc(),
    )


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class RuleCache:
    """Active rules per trigger, loaded on first use and dropped on invalidate().

    A load that overlaps an ``invalidate()`` returns its rows to the caller
    but does not cache them; the next call reloads.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, List[RuleRecord]] = {}
        self._lock = asyncio.Lock()
        self._generation = 0

    async def get_or_load(
        self,
        trigger: str,
        loader: Callable[[str], Awaitable[List[RuleRecord]]],
    ) -> List[RuleRecord]:
        cached = self._entries.get(trigger)
        if cached is not None:
            return list(cached)
        async with self._lock:
            cached = self._entries.get(trigger)
            if cached is None:
                generation = self._generation
                cached = await loader(trigger)
                if generation == self._generation:
                    self._entries[trigger] = list(cached)
                    logger.debug("rule_cache: loaded trigger=%s rules=%d", trigger, len(cached))
                else:
                    logger.debug("rule_cache: invalidated during load, not caching trigger=%s", trigger)
        return list(cached)

    def invalidate(self, trigger: Optional[str] = None) -> None:
        self._generation += 1
        if trigger is None:
            self._entries.clear()
        else:
            self._entries.pop(trigger, None)

    def __contains__(self, trigger: str) -> bool:
        return trigger in self._entries


class RuleRepository:
    """CRUD over automation rules; commits and invalidates the cache on every change."""

    def __init__(self, db: AsyncSession, cache: Optional[RuleCache] = None) -> None:
        self.db = db
        self.cache = cache

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    async def list_rules(self) -> List[AutomationRule]:
        result = await self.db.execute(select(AutomationRule).order_by(*_ordering()))
        return list(result.scalars().all())

    async def get(self, rule_id: str) -> Optional[AutomationRule]:
        result = await self.db.execute(select(AutomationRule).where(AutomationRule.id == rule_id))
        return result.scalar_one_or_none()

    async def create(self, payload: AutomationRuleCreate) -> AutomationRule:
        rule = AutomationRule(
            id=payload.id or new_uuid(),
            name=payload.name,
            description=_blank_to_none(payload.description),
            trigger=payload.trigger,
            is_active=payload.is_active,
            priority=payload.priority,
            stop_on_match=payload.stop_on_match,
            conditions=[dump_variant(condition) for condition in payload.conditions],
            actions=[dump_variant(action) for action in payload.actions],
            extra_data=payload.metadata,
        )
        self.db.add(rule)
        await self.db.commit()
        await self.db.refresh(rule)
        self._invalidate()
        logger.info("automation_rules: created rule=%s trigger=%s", rule.id, rule.trigger)
        return rule

    async def update(self, rule: AutomationRule, payload: AutomationRuleUpdate) -> AutomationRule:
        fields = payload.model_fields_set

        if "name" in fields and payload.name is not None:
            rule.name = payload.name
        if "description" in fields:
            rule.description = _blank_to_none(payload.description)
        if "trigger" in fields and payload.trigger is not None:
            rule.trigger = payload.trigger
        if "conditions" in fields:
            rule.conditions = [dump_variant(condition) for condition in payload.conditions or []]
        if "actions" in fields and payload.actions is not None:
            rule.actions = [dump_variant(action) for action in payload.actions]
        if "priority" in fields and payload.priority is not None:
            rule.priority = payload.priority
        if "stop_on_match" in fields and payload.stop_on_match is not None:
            rule.stop_on_match = payload.stop_on_match
        if "is_active" in fields and payload.is_active is not None:
            rule.is_active = payload.is_active
        if "metadata" in fields:
            rule.extra_data = payload.metadata

        rule.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(rule)
        self._invalidate()
        logger.info("automation_rules: updated rule=%s fields=%s", rule.id, sorted(fields))
        return rule

    async def set_active(self, rule: AutomationRule, is_active: bool) -> AutomationRule:
        rule.is_active = is_active
        rule.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(rule)
        self._invalidate()
        logger.info("automation_rules: toggled rule=%s active=%s", rule.id, is_active)
        return rule

    async def delete(self, rule: AutomationRule) -> None:
        rule_id = rule.id
        # SQLite does not enforce ON DELETE SET NULL without the FK pragma
        await self.db.execute(
            update(AutomationLog).where(AutomationLog.rule_id == rule_id).values(rule_id=None)
        )
        await self.db.delete(rule)
        await self.db.commit()
        self._invalidate()
        logger.info("automation_rules: deleted rule=%s", rule_id)

    # -- engine-facing ------------------------------------------------------

    async def _query_active(self, trigger: str) -> List[RuleRecord]:
        try:
            result = await self.db.execute(
                select(AutomationRule)
                .where(AutomationRule.trigger == trigger, AutomationRule.is_active.is_(True))
                .order_by(*_ordering())
            )
            rules = result.scalars().all()
        except SQLAlchemyError as exc:
            raise RuleLoadError(f"Failed to load automation rules for {trigger}: {exc}") from exc
        return [RuleRecord.from_model(rule) for rule in rules]

    async def load_active(self, trigger: str) -> List[RuleRecord]:
        """Active rules for ``trigger`` in evaluation order.

        Raises:
            RuleLoadError: the datastore could not be read.
        """
        if self.cache is None:
            return await self._query_active(trigger)
        return await self.cache.get_or_load(trigger, self._query_active)

    async def get_record(self, rule_id: str) -> Optional[RuleRecord]:
        try:
            rule = await self.get(rule_id)
        except SQLAlchemyError as exc:
            raise RuleLoadError(f"Failed to load automation rule {rule_id}: {exc}") from exc
        return RuleRecord.from_model(rule) if rule is not None else None

    async def mark_executed(self, rule_id: str, when: Optional[datetime] = None) -> None:
        await self.db.execute(
            update(AutomationRule)
            .where(AutomationRule.id == rule_id)
            .values(last_executed_at=when or utcnow(), updated_at=AutomationRule.updated_at)
        )
