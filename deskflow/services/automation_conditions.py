"""Condition evaluator for automation rules.

Every condition is a pure predicate over an ``AutomationContext``. Stored
payloads are validated into the closed set of condition variants before
evaluation; anything that cannot be validated or evaluated raises
``ConditionEvaluationError`` so the engine can record the rule as FAILED
instead of guessing a boolean.
"""

from __future__ import annotations

import logging
import operator
import unicodedata
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ValidationError

from deskflow.schemas.automation import (
    BusinessHoursCondition,
    MessageBodyContainsCondition,
    QueueCondition,
    TicketHasTagsCondition,
    TicketIdleMinutesCondition,
    TicketPriorityCondition,
    TicketStatusCondition,
    TicketUnassignedCondition,
    TicketUnreadMessagesCondition,
    condition_adapter,
)
from deskflow.services.automation_context import AutomationContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Sao_Paulo"

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "=": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
}


class ConditionEvaluationError(Exception):
    """A condition is malformed or cannot be evaluated against the context."""


def compare(actual: float, op: str, threshold: float) -> bool:
    """Shared numeric comparator: ``actual <op> threshold``."""
    try:
        return _COMPARATORS[op](actual, threshold)
    except KeyError:
        raise ConditionEvaluationError(f"Unsupported comparison operator: {op!r}")


def normalize_text(value: Optional[str]) -> str:
    """Case-fold and strip accents so 'URGÊNCIA' matches 'urgencia'."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def parse_time_to_minutes(value: str) -> int:
    """'HH:MM' -> minutes since midnight."""
    try:
        hours_raw, minutes_raw = value.split(":")
        hours, minutes = int(hours_raw), int(minutes_raw)
    except (AttributeError, ValueError):
        raise ConditionEvaluationError(f"Invalid time value: {value!r}")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ConditionEvaluationError(f"Invalid time value: {value!r}")
    return hours * 60 + minutes


def zoned_weekday_and_minutes(now: datetime, tz_name: str) -> Tuple[int, int]:
    """(weekday with 0=Sunday, minutes since midnight) of ``now`` in ``tz_name``."""
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ConditionEvaluationError(f"Unknown timezone: {tz_name!r}")
    local = now.astimezone(zone)
    # datetime.weekday(): Monday=0 .. Sunday=6
    weekday = (local.weekday() + 1) % 7
    return weekday, local.hour * 60 + local.minute


def within_window(current: int, start: int, end: int) -> bool:
    """Half-open ``[start, end)`` window in minutes; ``end < start`` spans midnight."""
    if start <= end:
        return start <= current < end
    return current >= start or current < end


# ---------------------------------------------------------------------------
# Per-variant predicates
# ---------------------------------------------------------------------------


def _ticket_status(condition: TicketStatusCondition, context: AutomationContext) -> bool:
    return not condition.statuses or context.ticket.status in condition.statuses


def _queue(condition: QueueCondition, context: AutomationContext) -> bool:
    if not condition.queue_ids:
        return True
    return context.ticket.queue_id is not None and context.ticket.queue_id in condition.queue_ids


def _ticket_priority(condition: TicketPriorityCondition, context: AutomationContext) -> bool:
    return not condition.priorities or context.ticket.priority in condition.priorities


def _ticket_unassigned(condition: TicketUnassignedCondition, context: AutomationContext) -> bool:
    return (context.ticket.agent_id is None) == condition.value


def _ticket_has_tags(condition: TicketHasTagsCondition, context: AutomationContext) -> bool:
    if not condition.tag_ids:
        return False
    present = set(context.ticket.tag_ids)
    if condition.mode == "all":
        return all(tag_id in present for tag_id in condition.tag_ids)
    if condition.mode == "none":
        return not any(tag_id in present for tag_id in condition.tag_ids)
    return any(tag_id in present for tag_id in condition.tag_ids)


def _message_body_contains(condition: MessageBodyContainsCondition, context: AutomationContext) -> bool:
    message = context.message
    if message is None or not message.body or not condition.keywords:
        return False
    content = normalize_text(message.body)
    for keyword in condition.keywords:
        needle = normalize_text(keyword).strip()
        if needle and needle in content:
            return True
    return False


def _ticket_idle_minutes(condition: TicketIdleMinutesCondition, context: AutomationContext) -> bool:
    last_activity = context.ticket.last_message_at
    if last_activity is None:
        return False
    idle_minutes = (context.now - last_activity).total_seconds() / 60.0
    return compare(idle_minutes, condition.operator, float(condition.minutes))


def _ticket_unread_messages(condition: TicketUnreadMessagesCondition, context: AutomationContext) -> bool:
    return compare(float(context.ticket.unread_messages or 0), condition.operator, float(condition.value))


def _business_hours(
    condition: BusinessHoursCondition,
    context: AutomationContext,
    default_timezone: str,
) -> bool:
    weekday, current = zoned_weekday_and_minutes(context.now, condition.timezone or default_timezone)
    if condition.days_of_week and weekday not in condition.days_of_week:
        return False
    start = parse_time_to_minutes(condition.start_time)
    end = parse_time_to_minutes(condition.end_time)
    return within_window(current, start, end)


_PREDICATES: Dict[type, Callable[[Any, AutomationContext], bool]] = {
    TicketStatusCondition: _ticket_status,
    QueueCondition: _queue,
    TicketPriorityCondition: _ticket_priority,
    TicketUnassignedCondition: _ticket_unassigned,
    TicketHasTagsCondition: _ticket_has_tags,
    MessageBodyContainsCondition: _message_body_contains,
    TicketIdleMinutesCondition: _ticket_idle_minutes,
    TicketUnreadMessagesCondition: _ticket_unread_messages,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_condition(raw: Union[Mapping[str, Any], BaseModel]) -> BaseModel:
    """Validate a stored condition payload into its variant model."""
    if isinstance(raw, BaseModel):
        return raw
    try:
        return condition_adapter.validate_python(raw)
    except ValidationError as exc:
        kind = raw.get("type") if isinstance(raw, Mapping) else type(raw).__name__
        raise ConditionEvaluationError(
            f"Invalid condition {kind!r}: {exc.errors()[0].get('msg', 'validation failed')}"
        ) from exc


def evaluate_condition(
    condition: Union[Mapping[str, Any], BaseModel],
    context: AutomationContext,
    *,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> bool:
    """Evaluate one condition. Raises ConditionEvaluationError on malformed input."""
    parsed = parse_condition(condition)
    if isinstance(parsed, BusinessHoursCondition):
        return _business_hours(parsed, context, default_timezone)
    predicate = _PREDICATES.get(type(parsed))
    if predicate is None:
        raise ConditionEvaluationError(f"Unsupported condition type: {type(parsed).__name__}")
    return predicate(parsed, context)


def matches_all(
    conditions: Iterable[Union[Mapping[str, Any], BaseModel]],
    context: AutomationContext,
    *,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> bool:
    """AND over all conditions; an empty list always matches.

    Every condition is validated up front, so a malformed entry fails the rule
    even when an earlier condition is already false.
    """
    parsed = [parse_condition(condition) for condition in conditions or ()]
    for condition in parsed:
        if not evaluate_condition(condition, context, default_timezone=default_timezone):
            return False
    return True
