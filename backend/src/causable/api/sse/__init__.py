"""Timeline stream infrastructure: broadcaster, sessions, and change sources."""

from causable.api.sse.broadcaster import EventBroadcaster, SubscriptionHandle
from causable.api.sse.change_source import (
    ChangeSource,
    DirectChangeSource,
    PostgresChangeSource,
)
from causable.api.sse.registry import SessionRegistry
from causable.api.sse.session import SessionState, StreamSession

__all__ = [
    "ChangeSource",
    "DirectChangeSource",
    "EventBroadcaster",
    "PostgresChangeSource",
    "SessionRegistry",
    "SessionState",
    "StreamSession",
    "SubscriptionHandle",
]
