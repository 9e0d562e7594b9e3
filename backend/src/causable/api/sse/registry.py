"""Session registry: the owner of every open timeline stream.

The registry builds a ``StreamSession`` per request, keeps it while the
connection lives, and forgets it when the session reports itself closed.
Teardown is wired to every exit path of the response: the body iterator's
``finally`` (client disconnect cancels it) and a background task Starlette
runs once the response has finished. ``StreamSession.close`` is idempotent,
so whichever fires first wins.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from causable.api.sse.session import (
    DEFAULT_KEEP_ALIVE_SECONDS,
    DEFAULT_MAX_QUEUE_SIZE,
    StreamSession,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from fastapi import Request

    from causable.api.sse.broadcaster import EventBroadcaster

logger = structlog.get_logger()

SHUTDOWN_REASON = "Server shutting down"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SessionRegistry:
    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        keep_alive_interval: float = DEFAULT_KEEP_ALIVE_SECONDS,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
    ) -> None:
        self._broadcaster = broadcaster
        self._keep_alive_interval = keep_alive_interval
        self._max_queue_size = max_queue_size
        self._sessions: dict[str, StreamSession] = {}

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def open_session(self) -> StreamSession:
        """Create, register and start a session."""
        session = StreamSession(
            self._broadcaster,
            keep_alive_interval=self._keep_alive_interval,
            max_queue_size=self._max_queue_size,
            on_closed=self.release,
        )
        self._sessions[session.id] = session
        session.start()
        return session

    def release(self, session: StreamSession) -> None:
        """Forget a session. Invoked by the session itself once closed."""
        if self._sessions.pop(session.id, None) is not None:
            logger.debug(
                "stream_session_released",
                session_id=session.id,
                active_streams=len(self._sessions),
            )

    async def handle_stream_request(
        self,
        request: Request | None = None,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> StreamingResponse:
        """Open a session and return the SSE response that drains it.

        ``headers`` are added to the standard SSE headers.
        """
        session = self.open_session()
        logger.info(
            "stream_connection_accepted",
            session_id=session.id,
            client=request.client.host if request is not None and request.client else None,
            active_streams=len(self._sessions),
        )
        return StreamingResponse(
            session.frames(),
            media_type="text/event-stream",
            headers={**STREAM_HEADERS, **(headers or {})},
            background=BackgroundTask(session.aclose),
        )

    def close_all(self, reason: str = SHUTDOWN_REASON) -> int:
        """Close every open session with a terminal error frame. Returns how many."""
        sessions = list(self._sessions.values())
        for session in sessions:
            session.close(reason=reason)
        if sessions:
            logger.info("stream_sessions_closed", count=len(sessions), reason=reason)
        return len(sessions)
