"""Context snapshot handed to conditions and actions during one rule pass."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

from deskflow.services.ticket_store import MessageSnapshot, TicketSnapshot


@dataclass(frozen=True)
class AutomationContext:
    trigger: str
    ticket: TicketSnapshot
    now: datetime
    message: Optional[MessageSnapshot] = None

    def with_ticket(self, ticket: TicketSnapshot) -> "AutomationContext":
        return replace(self, ticket=ticket)

    def template_context(self) -> Dict[str, Any]:
        """Plain-JSON view used for webhook templates and payloads."""
        return {
            "trigger": self.trigger,
            "ticket": self.ticket.as_dict(),
            "message": self.message.as_dict() if self.message else None,
            "now": self.now.isoformat(),
        }
