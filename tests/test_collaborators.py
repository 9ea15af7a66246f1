"""Tests for the outbound collaborators: webhook client and survey dispatch.

Run with: pytest tests/test_collaborators.py -v
"""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from deskflow.services.survey_dispatcher import (
    CelerySurveyDispatcher,
    SurveyDispatchError,
    SurveyDispatcher,
    start_survey_task,
)
from deskflow.services.webhook_client import WebhookClient, WebhookError


def _ok_transport(seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(204)

    return httpx.MockTransport(handler)


# ---------------------------------------------------------------------------
# WebhookClient
# ---------------------------------------------------------------------------


class TestWebhookClient:

    async def test_pooled_client_is_reused(self):
        client = WebhookClient(transport=_ok_transport())

        await client.send(method="POST", url="https://hooks.example.com/a", json_body={"a": 1})
        first = client._client
        await client.send(method="POST", url="https://hooks.example.com/b", json_body={"b": 2})

        assert client._client is first
        await client.aclose()

    async def test_configure_rebuilds_client(self):
        seen = []
        client = WebhookClient(transport=_ok_transport(seen), user_agent="deskflow/1")
        await client.send(method="GET", url="https://hooks.example.com/")
        old_key = client.cache_key
        old_client = client._client

        client.configure(user_agent="deskflow/2")
        await client.send(method="GET", url="https://hooks.example.com/")

        assert client.cache_key != old_key
        assert client._client is not old_client
        assert [request.headers["User-Agent"] for request in seen] == ["deskflow/1", "deskflow/2"]
        await client.aclose()
        assert old_client.is_closed
        assert client._closing == set()

    async def test_failed_stale_pool_close_is_logged(self, caplog):
        client = WebhookClient(transport=_ok_transport())
        await client.send(method="GET", url="https://hooks.example.com/")
        stale = client._client

        async def broken_aclose():
            raise RuntimeError("pool already torn down")

        stale.aclose = broken_aclose
        client.configure(user_agent="deskflow/2")
        await client.send(method="GET", url="https://hooks.example.com/")
        await client.aclose()

        assert client._closing == set()
        assert "closing stale pool failed" in caplog.text

    async def test_invalidate_closes_pool(self):
        client = WebhookClient(transport=_ok_transport())
        await client.send(method="GET", url="https://hooks.example.com/")
        pooled = client._client

        await client.invalidate()

        assert pooled.is_closed
        assert client._client is None

    async def test_text_body_and_params(self):
        seen = []
        client = WebhookClient(transport=_ok_transport(seen))

        await client.send(
            method="put",
            url="https://hooks.example.com/raw",
            text_body="plain text",
            params={"ticket": "t1"},
        )

        request = seen[0]
        assert request.method == "PUT"
        assert request.content == b"plain text"
        assert request.url.params["ticket"] == "t1"
        await client.aclose()

    async def test_network_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = WebhookClient(transport=httpx.MockTransport(handler))

        with pytest.raises(WebhookError, match="ConnectError"):
            await client.send(method="POST", url="https://hooks.example.com/")
        await client.aclose()

    async def test_non_2xx_carries_status(self):
        client = WebhookClient(transport=httpx.MockTransport(lambda request: httpx.Response(302)))

        with pytest.raises(WebhookError) as exc_info:
            await client.send(method="POST", url="https://hooks.example.com/")

        assert exc_info.value.status_code == 302
        await client.aclose()


# ---------------------------------------------------------------------------
# Survey dispatch
# ---------------------------------------------------------------------------


class TestCelerySurveyDispatcher:

    async def test_send_task_called_with_ticket(self):
        celery_app = MagicMock()
        celery_app.send_task.return_value = MagicMock(id="task-123")
        dispatcher = CelerySurveyDispatcher(celery_app, "surveys.trigger_for_ticket")

        task_id = await dispatcher.trigger_survey("ticket-1")

        assert task_id == "task-123"
        celery_app.send_task.assert_called_once_with(
            "surveys.trigger_for_ticket",
            args=["ticket-1"],
            kwargs={"auto_send": True},
        )

    async def test_broker_failure_raises_dispatch_error(self):
        celery_app = MagicMock()
        celery_app.send_task.side_effect = ConnectionError("broker down")
        dispatcher = CelerySurveyDispatcher(celery_app, "surveys.trigger_for_ticket")

        with pytest.raises(SurveyDispatchError, match="broker down"):
            await dispatcher.trigger_survey("ticket-1")


class _HangingDispatcher(SurveyDispatcher):
    async def trigger_survey(self, ticket_id):
        await asyncio.sleep(10)


async def test_survey_task_is_bounded():
    task = start_survey_task(_HangingDispatcher(), "ticket-1", timeout_seconds=0.05)

    with pytest.raises(SurveyDispatchError, match="timed out"):
        await task


def test_celery_app_is_producer_only():
    from deskflow.tasks import celery_app

    assert celery_app.main == "deskflow"
    assert celery_app.conf.task_ignore_result is True
    assert celery_app.conf.task_serializer == "json"
