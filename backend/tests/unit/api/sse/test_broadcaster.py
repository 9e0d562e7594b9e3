"""Tests for EventBroadcaster: fan-out, isolation, and subscription bookkeeping."""

from __future__ import annotations

import asyncio

import pytest

from causable.api.sse.broadcaster import EventBroadcaster, SubscriptionHandle
from causable.spans.schemas import Span


class Recorder:
    """Subscriber object exposing ``on_event``."""

    def __init__(self) -> None:
        self.received: list[Span] = []

    def on_event(self, span: Span) -> None:
        self.received.append(span)


# ---------------------------------------------------------------------------
# Subscribe / unsubscribe
# ---------------------------------------------------------------------------


class TestSubscriptions:
    def test_subscribe_returns_distinct_handles(self, broadcaster: EventBroadcaster) -> None:
        h1 = broadcaster.subscribe(lambda span: None)
        h2 = broadcaster.subscribe(lambda span: None)

        assert isinstance(h1, SubscriptionHandle)
        assert h1 != h2
        assert broadcaster.subscriber_count == 2

    def test_unsubscribe_is_idempotent(self, broadcaster: EventBroadcaster) -> None:
        handle = broadcaster.subscribe(lambda span: None)

        assert broadcaster.unsubscribe(handle) is True
        assert broadcaster.unsubscribe(handle) is False
        assert broadcaster.subscriber_count == 0

    def test_unsubscribe_unknown_handle_is_noop(self, broadcaster: EventBroadcaster) -> None:
        broadcaster.subscribe(lambda span: None)

        assert broadcaster.unsubscribe(SubscriptionHandle(9999)) is False
        assert broadcaster.subscriber_count == 1

    def test_handle_from_other_broadcaster_does_not_leak_across(self) -> None:
        first = EventBroadcaster()
        second = EventBroadcaster()
        handle = first.subscribe(lambda span: None)
        second.subscribe(lambda span: None)

        # Ids are per-instance; removing from first leaves second untouched
        first.unsubscribe(handle)
        assert first.subscriber_count == 0
        assert second.subscriber_count == 1

    def test_close_drops_everything(self, broadcaster: EventBroadcaster) -> None:
        for _ in range(3):
            broadcaster.subscribe(lambda span: None)

        broadcaster.close()

        assert broadcaster.subscriber_count == 0


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


class TestPublish:
    def test_delivers_to_callables_and_objects(self, broadcaster: EventBroadcaster, make_span) -> None:
        seen: list[Span] = []
        recorder = Recorder()
        broadcaster.subscribe(seen.append)
        broadcaster.subscribe(recorder)

        span = make_span()
        delivered = broadcaster.publish(span)

        assert delivered == 2
        assert seen == [span]
        assert recorder.received == [span]

    def test_publish_without_subscribers(self, broadcaster: EventBroadcaster, make_span) -> None:
        assert broadcaster.publish(make_span()) == 0

    def test_failing_subscriber_does_not_stop_others(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        def explode(span: Span) -> None:
            raise RuntimeError("consumer gone")

        before: list[Span] = []
        after: list[Span] = []
        broadcaster.subscribe(before.append)
        broadcaster.subscribe(explode)
        broadcaster.subscribe(after.append)

        span = make_span()
        broadcaster.publish(span)  # must not raise

        assert before == [span]
        assert after == [span]

    def test_preserves_publish_order_per_subscriber(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        recorder = Recorder()
        broadcaster.subscribe(recorder)
        spans = [make_span(id=f"e{i}") for i in range(1, 4)]

        for span in spans:
            broadcaster.publish(span)

        assert [s.id for s in recorder.received] == ["e1", "e2", "e3"]

    def test_subscriber_may_unsubscribe_itself_during_publish(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        calls: list[str] = []
        handles: dict[str, SubscriptionHandle] = {}

        def once(span: Span) -> None:
            calls.append(span.id)
            broadcaster.unsubscribe(handles["once"])

        other: list[Span] = []
        handles["once"] = broadcaster.subscribe(once)
        broadcaster.subscribe(other.append)

        broadcaster.publish(make_span(id="first"))
        broadcaster.publish(make_span(id="second"))

        assert calls == ["first"]
        assert [s.id for s in other] == ["first", "second"]
        assert broadcaster.subscriber_count == 1

    def test_subscriber_added_during_publish_misses_that_event(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        late: list[Span] = []

        def add_late(span: Span) -> None:
            if not late and broadcaster.subscriber_count == 1:
                broadcaster.subscribe(late.append)

        broadcaster.subscribe(add_late)

        broadcaster.publish(make_span(id="first"))
        broadcaster.publish(make_span(id="second"))

        assert [s.id for s in late] == ["second"]

    def test_published_span_is_immutable(self, broadcaster: EventBroadcaster, make_span) -> None:
        received: list[Span] = []
        broadcaster.subscribe(received.append)
        broadcaster.publish(make_span())

        with pytest.raises(Exception):  # pydantic raises ValidationError on frozen models
            received[0].who = "mallory"  # type: ignore[misc]


class TestCoroutineSubscribers:
    async def test_coroutine_subscriber_is_scheduled_not_awaited(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        gate = asyncio.Event()
        received: list[Span] = []

        async def slow(span: Span) -> None:
            await gate.wait()
            received.append(span)

        fast: list[Span] = []
        broadcaster.subscribe(slow)
        broadcaster.subscribe(fast.append)

        span = make_span()
        broadcaster.publish(span)

        # publish returned while the slow consumer is still waiting
        assert fast == [span]
        assert received == []

        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert received == [span]

    async def test_failing_coroutine_subscriber_is_contained(
        self, broadcaster: EventBroadcaster, make_span
    ) -> None:
        async def broken(span: Span) -> None:
            raise ConnectionResetError("peer reset")

        ok: list[Span] = []
        broadcaster.subscribe(broken)
        broadcaster.subscribe(ok.append)

        broadcaster.publish(make_span())
        for _ in range(5):
            await asyncio.sleep(0)

        assert len(ok) == 1
        assert broadcaster.subscriber_count == 2
