"""Timeline stream endpoint.

    GET /api/timeline/stream    server-sent events for every new span

Whether the stream shares the REST surface's API-key auth and rate limit is
a deployment choice (``CAUSABLE_STREAM_AUTH_REQUIRED``).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from causable.api.sse.dependencies import get_session_registry
from causable.api.sse.registry import SessionRegistry
from causable.core.middleware import guard_stream
from causable.core.schemas import ErrorResponse

router = APIRouter(tags=["timeline"])


@router.get(
    "/api/timeline/stream",
    response_class=StreamingResponse,
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def timeline_stream(
    request: Request,
    rate_limit_headers: dict[str, str] = Depends(guard_stream),
    registry: SessionRegistry = Depends(get_session_registry),
) -> StreamingResponse:
    """SSE stream of newly created spans. No replay: only spans published after connect."""
    return await registry.handle_stream_request(request, headers=rate_limit_headers)
