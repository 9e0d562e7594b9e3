"""Async client for the Causable Cloud API.

Wraps the span REST endpoints and the timeline stream. ``stream()`` follows
a single connection; ``iter_timeline()`` reconnects after errors or closed
connections with capped exponential backoff. The server keeps no history
for disconnected clients, so spans published while reconnecting are missed.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from causable.sdk.sse import TimelineEvent, parse_frames
from causable.spans.schemas import Span, SpanCreate, SpanFilter

logger = structlog.get_logger()

STREAM_PATH = "/api/timeline/stream"
SPANS_PATH = "/api/spans"


class CausableClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CausableClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> CausableClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key

    @property
    def stream_url(self) -> str:
        return f"{self._base_url}{STREAM_PATH}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def fetch_spans(self, filters: SpanFilter | None = None) -> list[Span]:
        params = filters.model_dump(exclude_none=True) if filters is not None else {}
        response = await self._http.get(SPANS_PATH, params=params, headers=self._headers())
        self._raise_for_status(response, "Failed to fetch spans")
        return [Span.model_validate(item) for item in response.json()]

    async def create_span(self, span: SpanCreate | dict[str, Any]) -> Span:
        body = span if isinstance(span, SpanCreate) else SpanCreate.model_validate(span)
        response = await self._http.post(
            SPANS_PATH,
            content=body.model_dump_json(exclude_none=True),
            headers=self._headers(),
        )
        self._raise_for_status(response, "Failed to create span")
        return Span.model_validate(response.json())

    # ------------------------------------------------------------------
    # Timeline stream
    # ------------------------------------------------------------------

    async def stream(self) -> AsyncIterator[TimelineEvent]:
        """Follow one stream connection until the server ends it."""
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(self._http.timeout.connect, read=None)
        async with self._http.stream("GET", STREAM_PATH, headers=headers, timeout=timeout) as response:
            if response.status_code >= 400:
                await response.aread()
            self._raise_for_status(response, "Failed to open timeline stream")
            async for event in parse_frames(response.aiter_lines()):
                yield event

    async def iter_timeline(
        self,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int | None = None,
    ) -> AsyncIterator[TimelineEvent]:
        """Follow the timeline across reconnects.

        Error frames and dropped connections trigger a fresh connection after
        a backoff; the delay resets once a handshake arrives. Authentication
        failures are raised, not retried. ``max_attempts`` bounds consecutive
        failed connections (unbounded by default).
        """
        failures = 0
        while True:
            try:
                async with contextlib.aclosing(self.stream()) as events:
                    async for event in events:
                        if event.type == "connected":
                            failures = 0
                        yield event
                        if event.type == "error":
                            break
            except CausableClientError as exc:
                if exc.status_code in (401, 403):
                    raise
                logger.warning("timeline_stream_failed", error=str(exc))
            except httpx.TransportError as exc:
                logger.warning("timeline_stream_failed", error=str(exc))

            failures += 1
            if max_attempts is not None and failures >= max_attempts:
                raise CausableClientError(f"Timeline stream unavailable after {failures} attempts")
            delay = min(initial_delay * 2 ** (failures - 1), max_delay)
            logger.info("timeline_stream_reconnecting", attempt=failures, delay=delay)
            await asyncio.sleep(delay)

    @staticmethod
    def _raise_for_status(response: httpx.Response, message: str) -> None:
        if response.is_success:
            return
        detail = response.reason_phrase
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("message") or body.get("error") or detail
        raise CausableClientError(f"{message}: {detail}", status_code=response.status_code)
