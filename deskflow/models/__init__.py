"""SQLAlchemy ORM models"""

from deskflow.models.contact import Contact
from deskflow.models.queue import Queue, QueueAgent
from deskflow.models.agent import Agent
from deskflow.models.tag import Tag, TicketTag
from deskflow.models.ticket import Ticket
from deskflow.models.message import Message
from deskflow.models.automation_rule import AutomationRule
from deskflow.models.automation_log import AutomationLog

__all__ = [
    "Contact",
    "Queue",
    "QueueAgent",
    "Agent",
    "Tag",
    "TicketTag",
    "Ticket",
    "Message",
    "AutomationRule",
    "AutomationLog",
]
