"""
Delivery sinks: where execution results go once a channel has been re-run.

Delivery is fire-and-forget from the dispatcher's point of view. Reaching
the actual client (and retrying when that fails) is the sink's job.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from .metrics import MetricsCollector
from .models import ExecutionResult

log = structlog.get_logger()

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_SECONDS = 1.0


def _retry_after(header: str | None, fallback: float) -> float:
    """Seconds to wait per a Retry-After header (delay-seconds or HTTP-date)."""
    if not header:
        return fallback
    try:
        return max(0.0, float(header))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return fallback
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@runtime_checkable
class DeliverySink(Protocol):
    async def deliver(self, channel_id: str, result: ExecutionResult) -> None:
        ...


class MemorySink:
    """Keeps every delivered result per channel, in delivery order."""

    def __init__(self) -> None:
        self.deliveries: dict[str, list[ExecutionResult]] = defaultdict(list)

    async def deliver(self, channel_id: str, result: ExecutionResult) -> None:
        self.deliveries[channel_id].append(result)

    def for_channel(self, channel_id: str) -> list[ExecutionResult]:
        return list(self.deliveries.get(channel_id, ()))

    def reset(self) -> None:
        self.deliveries.clear()


class CallbackSink:
    """Adapts a plain (sync or async) ``callback(channel_id, result)``."""

    def __init__(
        self,
        callback: Callable[[str, ExecutionResult], Awaitable[Any] | Any],
    ):
        self._callback = callback

    async def deliver(self, channel_id: str, result: ExecutionResult) -> None:
        out = self._callback(channel_id, result)
        if inspect.isawaitable(out):
            await out


class WebhookSink:
    """
    POSTs each result to ``{base_url}/channels/{channel_id}``.

    Rate limits (429) and server/connection errors are retried with
    exponential backoff; 4xx responses are not. A result that still cannot
    be delivered is logged and dropped.
    """

    def __init__(
        self,
        base_url: str,
        verify_tls: bool = True,
        request_timeout: float = 30,
        headers: dict[str, str] | None = None,
        metrics: MetricsCollector | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._headers = dict(headers or {})
        self._metrics = metrics
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            headers=self._headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def deliver(self, channel_id: str, result: ExecutionResult) -> None:
        try:
            await self._post(channel_id, result.to_payload())
        except (httpx.HTTPError, OSError) as exc:
            log.error("sink.webhook_failed", channel=channel_id, error=str(exc))
            if self._metrics:
                self._metrics.inc("webhook_failures_total")

    async def _post(self, channel_id: str, body: dict[str, Any]) -> None:
        assert self._client
        url = f"{self._base_url}/channels/{channel_id}"

        last_exc: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                resp = await self._client.post(url, json=body)

                if resp.status_code == 429:
                    retry_after = _retry_after(
                        resp.headers.get("Retry-After"),
                        self._retry_base_seconds * (attempt + 1),
                    )
                    log.warning("sink.rate_limited", channel=channel_id, retry_after=retry_after)
                    last_exc = httpx.HTTPStatusError(
                        "rate limited", request=resp.request, response=resp
                    )
                    await asyncio.sleep(retry_after)
                    continue

                resp.raise_for_status()
                return

            except httpx.HTTPStatusError as exc:
                if 400 <= exc.response.status_code < 500:
                    log.error(
                        "sink.client_error",
                        status=exc.response.status_code,
                        channel=channel_id,
                    )
                    raise  # Don't retry 4xx
                last_exc = exc
            except (httpx.ConnectError, httpx.ReadError) as exc:
                last_exc = exc

            backoff = self._retry_base_seconds * (2 ** attempt)
            log.warning(
                "sink.retry",
                channel=channel_id,
                attempt=attempt + 1,
                backoff=backoff,
                error=str(last_exc),
            )
            await asyncio.sleep(backoff)

        if last_exc:
            raise last_exc
