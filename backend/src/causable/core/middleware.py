"""FastAPI dependencies for authentication and rate limiting, plus request logging.

These dependencies are injected into route handlers via ``Depends()``. The
auth service and rate limiter live on ``app.state`` so each app instance
(and each test) gets its own.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from fastapi import Request, Response

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

    from causable.core.auth import ApiKeyAuth
    from causable.core.rate_limit import RateLimiter

logger = structlog.get_logger()


def client_identifier(request: Request) -> str:
    """Best-effort client identity for rate limiting."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    connecting_ip = request.headers.get("cf-connecting-ip")
    if connecting_ip:
        return connecting_ip
    if request.client is not None:
        return request.client.host
    return "default"


async def require_api_key(request: Request) -> str:
    """Verify the Bearer API key. Raises 401."""
    auth: ApiKeyAuth = request.app.state.auth
    return auth.verify_header(request.headers.get("authorization"))


async def enforce_rate_limit(request: Request, response: Response) -> dict[str, str]:
    """Count the request against the caller's window. Raises 429.

    The ``X-RateLimit-*`` headers are set on ``response`` and also returned,
    for routes that build their own response.
    """
    limiter: RateLimiter = request.app.state.rate_limiter
    headers = limiter.check(client_identifier(request))
    response.headers.update(headers)
    return headers


async def guard_stream(request: Request, response: Response) -> dict[str, str]:
    """Auth and rate limiting for the timeline stream, when the deployment enables them.

    Returns the rate-limit headers to put on the stream response.
    """
    if not request.app.state.settings.stream_auth_required:
        return {}
    await require_api_key(request)
    return await enforce_rate_limit(request, response)


class RequestLoggingMiddleware:
    """Logs method, path, status and duration for every HTTP request.

    Pure ASGI so long-lived streaming responses pass through untouched; for
    a timeline stream the duration is the lifetime of the connection.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status_code = 500
        log = logger.bind(method=scope["method"], path=scope["path"])
        log.debug("request_started", query=scope.get("query_string", b"").decode("latin-1"))

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            log.error(
                "request_failed",
                error=str(exc),
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        log.info(
            "request_completed",
            status=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
