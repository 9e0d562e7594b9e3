"""In-process publish/subscribe hub for newly persisted spans.

One ``EventBroadcaster`` is created per process in the app lifespan and
injected into the change source and the session registry. It fans each
published span out to every registered subscriber and isolates them from
each other: a subscriber that raises, or whose coroutine fails, is logged
and skipped, never surfacing to the publisher.

Subscribers are either plain callables taking a ``Span`` or objects with an
``on_event(span)`` method. Synchronous subscribers must not block (stream
sessions only enqueue); coroutine results are scheduled as their own tasks
so ``publish`` never waits on a slow consumer.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from causable.spans.schemas import Span

logger = structlog.get_logger()

SpanCallback = Callable[["Span"], "Awaitable[None] | None"]


@runtime_checkable
class SpanSubscriber(Protocol):
    def on_event(self, span: Span) -> Awaitable[None] | None: ...


Subscriber = SpanCallback | SpanSubscriber


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by ``subscribe``; pass it back to ``unsubscribe``."""

    id: int


class EventBroadcaster:
    """Fans spans out to the current set of subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[int, SpanCallback] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> SubscriptionHandle:
        """Register a subscriber and return its handle."""
        callback: SpanCallback = (
            subscriber.on_event if isinstance(subscriber, SpanSubscriber) else subscriber
        )
        handle = SubscriptionHandle(next(self._ids))
        self._subscribers[handle.id] = callback
        logger.debug(
            "broadcast_subscribed",
            subscription_id=handle.id,
            subscribers=len(self._subscribers),
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a subscription. Unknown or already-removed handles are a no-op.

        Returns ``True`` only if a subscription was actually removed.
        """
        removed = self._subscribers.pop(handle.id, None) is not None
        if removed:
            logger.debug(
                "broadcast_unsubscribed",
                subscription_id=handle.id,
                subscribers=len(self._subscribers),
            )
        return removed

    def publish(self, span: Span) -> int:
        """Deliver ``span`` to every subscriber registered at call time.

        Iterates a snapshot so subscribers may (un)subscribe from inside their
        own callback. Returns the number of subscribers dispatched to.
        """
        snapshot = list(self._subscribers.items())
        for subscription_id, callback in snapshot:
            try:
                result = callback(span)
            except Exception:
                logger.exception(
                    "broadcast_subscriber_failed",
                    subscription_id=subscription_id,
                    span_id=span.id,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(subscription_id, span.id, result)

        logger.debug("broadcast_published", span_id=span.id, subscribers=len(snapshot))
        return len(snapshot)

    def close(self) -> None:
        """Drop every subscription. Called once at process shutdown."""
        self._subscribers.clear()
        for task in list(self._pending):
            task.cancel()

    def _schedule(self, subscription_id: int, span_id: str, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                "broadcast_subscriber_failed",
                subscription_id=subscription_id,
                span_id=span_id,
                error="coroutine subscriber requires a running event loop",
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _deliver() -> None:
            await awaitable

        task = loop.create_task(_deliver())
        self._pending.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "broadcast_subscriber_failed",
                    subscription_id=subscription_id,
                    span_id=span_id,
                    error=str(exc),
                    exc_info=exc,
                )

        task.add_done_callback(_done)
