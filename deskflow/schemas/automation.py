"""Automation schemas: condition/action variants, rule CRUD payloads, run summaries.

Conditions and actions form a closed set of variants tagged by ``type``.
Unknown variants and unknown fields are rejected so that nothing the engine
cannot evaluate is ever stored. Wire format is camelCase; Python attributes
are snake_case.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

AutomationTrigger = Literal["TICKET_CREATED", "MESSAGE_RECEIVED", "TICKET_STATUS_CHANGED"]
AutomationLogStatus = Literal["SUCCESS", "SKIPPED", "FAILED"]
ActionStatus = Literal["performed", "skipped", "failed"]

TicketStatus = Literal["BOT", "PENDING", "OPEN", "CLOSED"]
TicketPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
ComparisonOperator = Literal[">", ">=", "=", "<", "<="]
TagMatchMode = Literal["all", "any", "none"]
WebhookMethod = Literal["GET", "POST", "PUT", "PATCH"]

# int stays int on dump so stored payloads round-trip unchanged
Number = Union[int, float]

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Variant(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class TicketStatusCondition(_Variant):
    type: Literal["ticket_status"]
    statuses: List[TicketStatus] = Field(default_factory=list, description="Empty = any status")


class QueueCondition(_Variant):
    type: Literal["queue"]
    queue_ids: List[str] = Field(default_factory=list, description="Empty = any queue")


class TicketPriorityCondition(_Variant):
    type: Literal["ticket_priority"]
    priorities: List[TicketPriority] = Field(default_factory=list, description="Empty = any priority")


class TicketUnassignedCondition(_Variant):
    type: Literal["ticket_unassigned"]
    value: bool


class TicketHasTagsCondition(_Variant):
    type: Literal["ticket_has_tags"]
    tag_ids: List[str]
    mode: TagMatchMode = "any"


class MessageBodyContainsCondition(_Variant):
    type: Literal["message_body_contains"]
    keywords: List[str]


class TicketIdleMinutesCondition(_Variant):
    type: Literal["ticket_idle_minutes"]
    operator: ComparisonOperator = ">="
    minutes: Number = Field(..., ge=0)


class TicketUnreadMessagesCondition(_Variant):
    type: Literal["ticket_unread_messages"]
    operator: ComparisonOperator = ">="
    value: Number = Field(..., ge=0)


class BusinessHoursCondition(_Variant):
    type: Literal["business_hours"]
    timezone: Optional[str] = Field(None, description="IANA timezone; default from settings")
    days_of_week: List[Annotated[int, Field(ge=0, le=6)]] = Field(
        default_factory=list,
        description="0=Sunday .. 6=Saturday; empty = every day",
    )
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM; earlier than start_time wraps past midnight")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v


AutomationCondition = Annotated[
    Union[
        TicketStatusCondition,
        QueueCondition,
        TicketPriorityCondition,
        TicketUnassignedCondition,
        TicketHasTagsCondition,
        MessageBodyContainsCondition,
        TicketIdleMinutesCondition,
        TicketUnreadMessagesCondition,
        BusinessHoursCondition,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class AssignAgentAction(_Variant):
    type: Literal["assign_agent"]
    strategy: Literal["LEAST_TICKETS"] = "LEAST_TICKETS"
    agent_ids: Optional[List[str]] = None
    max_tickets_per_agent: Optional[int] = Field(None, ge=0)
    include_queue_agents: bool = True


class AssignQueueAction(_Variant):
    type: Literal["assign_queue"]
    queue_id: str = Field(..., min_length=1)


class ApplyTagsAction(_Variant):
    type: Literal["apply_tags"]
    tag_ids: List[str] = Field(..., min_length=1)


class CloseTicketAction(_Variant):
    type: Literal["close_ticket"]
    reason: Optional[str] = Field(None, max_length=2000)
    apply_survey: bool = False


class TriggerWebhookAction(_Variant):
    type: Literal["trigger_webhook"]
    url: str = Field(..., min_length=1, max_length=2000)
    method: WebhookMethod = "POST"
    headers: Optional[Dict[str, str]] = None
    body_template: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, ge=1, le=60000)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return v

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


AutomationAction = Annotated[
    Union[
        AssignAgentAction,
        AssignQueueAction,
        ApplyTagsAction,
        CloseTicketAction,
        TriggerWebhookAction,
    ],
    Field(discriminator="type"),
]

condition_adapter: TypeAdapter = TypeAdapter(AutomationCondition)
action_adapter: TypeAdapter = TypeAdapter(AutomationAction)


def dump_variant(variant: BaseModel) -> Dict[str, Any]:
    """Serialize a condition/action the way it is stored and returned (camelCase, only given fields)."""
    return variant.model_dump(mode="json", by_alias=True, exclude_unset=True)


# ---------------------------------------------------------------------------
# Rule CRUD
# ---------------------------------------------------------------------------


class AutomationRuleCreate(CamelModel):
    """Payload for creating an automation rule"""

    id: Optional[str] = Field(None, min_length=1, max_length=36, description="Generated when omitted")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    trigger: AutomationTrigger
    conditions: List[AutomationCondition] = Field(default_factory=list)
    actions: List[AutomationAction] = Field(..., min_length=1)
    priority: int = 0
    stop_on_match: bool = False
    is_active: bool = True
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Rule name is required")
        return v


class AutomationRuleUpdate(CamelModel):
    """Partial update; only fields present in the payload are applied"""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    trigger: Optional[AutomationTrigger] = None
    conditions: Optional[List[AutomationCondition]] = None
    actions: Optional[List[AutomationAction]] = Field(None, min_length=1)
    priority: Optional[int] = None
    stop_on_match: Optional[bool] = None
    is_active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Rule name cannot be blank")
        return v


class AutomationRuleResponse(CamelModel):
    """Rule as returned by the admin API"""

    id: str
    name: str
    description: Optional[str] = None
    trigger: str
    is_active: bool
    priority: int
    stop_on_match: bool
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    last_executed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, rule: Any) -> "AutomationRuleResponse":
        # ORM `metadata` is SQLAlchemy's MetaData, the JSON bag lives in `extra_data`
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            trigger=rule.trigger,
            is_active=rule.is_active,
            priority=rule.priority,
            stop_on_match=rule.stop_on_match,
            conditions=list(rule.conditions or []),
            actions=list(rule.actions or []),
            metadata=rule.extra_data,
            last_executed_at=rule.last_executed_at,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class AutomationToggleRequest(CamelModel):
    is_active: StrictBool


class AutomationTestRequest(CamelModel):
    """Run one rule against an existing ticket"""

    ticket_id: str = Field(..., min_length=1)
    message_id: Optional[str] = None
    dry_run: bool = Field(True, description="Simulate actions without mutating the ticket")


class AutomationDeleteResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Run summaries and logs
# ---------------------------------------------------------------------------


class ActionResult(CamelModel):
    type: str
    status: ActionStatus
    details: Optional[str] = None


class RuleExecutionSummary(CamelModel):
    rule_id: str
    matched: bool = False
    actions: List[ActionResult] = Field(default_factory=list)
    error: Optional[str] = None
    stop_processing: Optional[bool] = None


class AutomationRunSummary(CamelModel):
    trigger: str
    ticket_id: Optional[str] = None
    results: List[RuleExecutionSummary] = Field(default_factory=list)


class AutomationLogResponse(CamelModel):
    id: str
    trigger: str
    status: AutomationLogStatus
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    context: Optional[Any] = None
    created_at: datetime
