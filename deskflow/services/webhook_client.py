"""Outbound HTTP client for automation webhooks.

One ``WebhookClient`` is owned by the application (``app.state``) and injected
into the action executor. It lazily opens a pooled ``httpx.AsyncClient`` keyed
by a fingerprint of its configuration; ``configure()`` with different
settings or ``invalidate()`` drops the pooled client so the next call
recreates it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Set

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 7000


class WebhookError(Exception):
    """Webhook call failed: network error, timeout or non-2xx response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    elapsed_ms: int
    body_preview: str = ""


class WebhookClient:
    """Owned, injectable HTTP client for webhook actions."""

    def __init__(
        self,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        user_agent: str = "deskflow-automation",
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.default_timeout_ms = default_timeout_ms
        self.user_agent = user_agent
        self.max_connections = max_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_key: Optional[str] = None
        self._closing: Set[asyncio.Task] = set()

    @property
    def cache_key(self) -> str:
        """Fingerprint of the settings the pooled client was built from."""
        raw = json.dumps(
            {
                "user_agent": self.user_agent,
                "max_connections": self.max_connections,
                "transport": id(self._transport) if self._transport is not None else None,
            },
            sort_keys=True,
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def configure(
        self,
        *,
        user_agent: Optional[str] = None,
        max_connections: Optional[int] = None,
        default_timeout_ms: Optional[int] = None,
    ) -> None:
        if user_agent is not None:
            self.user_agent = user_agent
        if max_connections is not None:
            self.max_connections = max_connections
        if default_timeout_ms is not None:
            self.default_timeout_ms = default_timeout_ms
        # a stale pooled client is dropped on the next request, see _get_client

    def _get_client(self) -> httpx.AsyncClient:
        key = self.cache_key
        if self._client is not None and not self._client.is_closed and self._client_key == key:
            return self._client
        if self._client is not None and not self._client.is_closed:
            # Settings changed: close the old pool in the background, never block a request on it.
            task = asyncio.get_running_loop().create_task(self._client.aclose())
            self._closing.add(task)
            task.add_done_callback(self._stale_pool_closed)
        self._client = httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=max(1, self.max_connections // 2),
                keepalive_expiry=120,
            ),
            headers={"User-Agent": self.user_agent},
            follow_redirects=False,
            transport=self._transport,
        )
        self._client_key = key
        logger.debug("webhook_client: opened pooled client key=%s", key)
        return self._client

    def _stale_pool_closed(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("webhook_client: closing stale pool failed: %s", exc)

    async def invalidate(self) -> None:
        """Close the pooled client; the next request opens a fresh one."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
        self._client_key = None
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def aclose(self) -> None:
        await self.invalidate()

    async def send(
        self,
        *,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        json_body: Any = None,
        text_body: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> WebhookResponse:
        """Perform exactly one request bounded by ``timeout_ms``.

        Raises:
            WebhookError: on network error, timeout or a non-2xx status.
        """
        timeout_seconds = (timeout_ms or self.default_timeout_ms) / 1000.0
        client = self._get_client()

        request_kwargs: Dict[str, Any] = {
            "headers": dict(headers or {}),
            "params": params,
            "timeout": httpx.Timeout(timeout_seconds),
        }
        if text_body is not None:
            request_kwargs["content"] = text_body.encode("utf-8")
        elif json_body is not None:
            request_kwargs["json"] = json_body

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            # wait_for bounds the whole exchange and cancels the request on expiry
            response = await asyncio.wait_for(
                client.request(method.upper(), url, **request_kwargs),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise WebhookError(f"Webhook timed out after {int(timeout_seconds * 1000)}ms")
        except httpx.HTTPError as exc:
            raise WebhookError(f"Webhook request failed: {exc.__class__.__name__}: {exc}")

        elapsed_ms = int((loop.time() - started) * 1000)
        if not 200 <= response.status_code < 300:
            raise WebhookError(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return WebhookResponse(
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
            body_preview=response.text[:200],
        )
