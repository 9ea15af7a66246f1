"""Satisfaction-survey dispatch for the close_ticket action.

The survey itself is owned by another service; automation only asks for it.
The request runs as a bounded asyncio task (``start_survey_task``) so callers
decide whether to await it, and for how long, instead of firing a bare
unawaited coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SurveyDispatchError(Exception):
    """Survey could not be requested."""


class SurveyDispatcher(ABC):

    @abstractmethod
    async def trigger_survey(self, ticket_id: str) -> Optional[str]:
        """Request a satisfaction survey for the ticket; returns a reference id if any."""


class CelerySurveyDispatcher(SurveyDispatcher):
    """Publishes the survey request to the survey worker through Celery."""

    def __init__(self, celery_app: Any, task_name: str) -> None:
        self.celery_app = celery_app
        self.task_name = task_name

    async def trigger_survey(self, ticket_id: str) -> Optional[str]:
        try:
            # send_task blocks on the broker connection, keep it off the event loop
            result = await asyncio.to_thread(
                self.celery_app.send_task,
                self.task_name,
                args=[ticket_id],
                kwargs={"auto_send": True},
            )
        except Exception as exc:
            raise SurveyDispatchError(f"Survey dispatch failed: {exc}") from exc
        task_id = getattr(result, "id", None)
        logger.info("survey_dispatcher: queued survey ticket=%s task=%s", ticket_id, task_id)
        return task_id


def start_survey_task(
    dispatcher: SurveyDispatcher,
    ticket_id: str,
    *,
    timeout_seconds: float,
) -> "asyncio.Task[Optional[str]]":
    """Schedule a survey request bounded by ``timeout_seconds``.

    The returned task raises ``SurveyDispatchError`` on failure or timeout.
    """

    async def _run() -> Optional[str]:
        try:
            return await asyncio.wait_for(dispatcher.trigger_survey(ticket_id), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise SurveyDispatchError(f"Survey dispatch timed out after {timeout_seconds:g}s")

    return asyncio.create_task(_run(), name=f"survey-dispatch-{ticket_id}")
