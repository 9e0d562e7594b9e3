"""One client's timeline stream.

A ``StreamSession`` owns the outbound frame queue that the HTTP response
body drains, the keep-alive task, and its own teardown. Lifecycle::

    connecting --start()--> open --close()--> closing --> closed

Writes never block: frames go onto the queue with ``put_nowait`` and a
consumer that falls more than ``max_queue_size`` frames behind is treated
as gone. Any write failure tears down this session only; nothing is raised
back into the broadcaster.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterator, Callable
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from causable.api.sse.frames import KEEP_ALIVE_FRAME, error_frame, handshake_frame, span_frame
from causable.core.exceptions import StreamSessionError

if TYPE_CHECKING:
    from causable.api.sse.broadcaster import EventBroadcaster, SubscriptionHandle
    from causable.spans.schemas import Span

logger = structlog.get_logger()

DEFAULT_KEEP_ALIVE_SECONDS = 30.0
DEFAULT_MAX_QUEUE_SIZE = 256

BACKPRESSURE_ERROR = "Stream consumer fell behind; reconnect to resume"

# Marks end-of-stream on the outbound queue
_END = object()


class SessionState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class StreamSession:
    """Bridges broadcaster deliveries onto one SSE response body."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        keep_alive_interval: float = DEFAULT_KEEP_ALIVE_SECONDS,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        on_closed: Callable[[StreamSession], None] | None = None,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or secrets.token_hex(8)
        self.state = SessionState.CONNECTING
        self._broadcaster = broadcaster
        self._keep_alive_interval = keep_alive_interval
        self._max_queue_size = max_queue_size
        self._on_closed = on_closed
        # Unbounded so teardown can always append its frames; the bound is
        # enforced in _write.
        self._outbound: asyncio.Queue[object] = asyncio.Queue()
        self._subscription: SubscriptionHandle | None = None
        self._keep_alive_task: asyncio.Task[None] | None = None
        self._log = logger.bind(session_id=self.id)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def pending_frames(self) -> int:
        return self._outbound.qsize()

    @property
    def subscription(self) -> SubscriptionHandle | None:
        return self._subscription

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Send the handshake, subscribe, and arm the keep-alive timer.

        Must be called exactly once, from inside the running event loop.
        """
        if self.state is not SessionState.CONNECTING:
            raise StreamSessionError(f"Session {self.id} already started (state={self.state}).")

        self._outbound.put_nowait(handshake_frame())
        self.state = SessionState.OPEN
        self._subscription = self._broadcaster.subscribe(self)
        self._keep_alive_task = asyncio.get_running_loop().create_task(
            self._keep_alive(), name=f"stream-keep-alive-{self.id}"
        )
        self._log.info("stream_session_opened", subscription_id=self._subscription.id)

    def close(self, reason: str | None = None) -> None:
        """Tear the session down. Safe to call any number of times.

        With a ``reason`` the client gets a terminal error frame after any
        frames already queued.
        """
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING

        task = self._keep_alive_task
        self._keep_alive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        if self._subscription is not None:
            self._broadcaster.unsubscribe(self._subscription)
            self._subscription = None

        if reason is not None:
            self._outbound.put_nowait(error_frame(reason))
        self._outbound.put_nowait(_END)

        self.state = SessionState.CLOSED
        if reason is None:
            self._log.info("stream_session_closed")
        else:
            self._log.warning("stream_session_closed", reason=reason)

        if self._on_closed is not None:
            on_closed, self._on_closed = self._on_closed, None
            on_closed(self)

    async def aclose(self, reason: str | None = None) -> None:
        """Coroutine form of ``close`` for hooks that must run on the event loop."""
        self.close(reason)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def on_event(self, span: Span) -> None:
        """Broadcaster callback: enqueue ``span`` while open, else drop it."""
        if self.state is not SessionState.OPEN:
            return
        if not self._write(span_frame(span)):
            self._log.warning(
                "stream_session_write_failed", span_id=span.id, pending=self.pending_frames
            )
            self.close(reason=BACKPRESSURE_ERROR)

    async def frames(self) -> AsyncIterator[str]:
        """Yield outbound frames in order until the session closes.

        This is the HTTP response body. Leaving the iteration for any reason
        (client disconnect cancels it) closes the session.
        """
        try:
            while True:
                frame = await self._outbound.get()
                if frame is _END:
                    break
                yield frame  # type: ignore[misc]
        finally:
            self.close()

    def _write(self, frame: str) -> bool:
        if self.state is not SessionState.OPEN:
            return False
        if self._outbound.qsize() >= self._max_queue_size:
            return False
        self._outbound.put_nowait(frame)
        return True

    async def _keep_alive(self) -> None:
        while self.state is SessionState.OPEN:
            await asyncio.sleep(self._keep_alive_interval)
            if self.state is not SessionState.OPEN:
                return
            if not self._write(KEEP_ALIVE_FRAME):
                self._log.warning("stream_session_keep_alive_failed", pending=self.pending_frames)
                self.close(reason=BACKPRESSURE_ERROR)
                return
