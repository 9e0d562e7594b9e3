"""Python client for the Causable Cloud API and timeline stream."""

from causable.sdk.client import CausableClient, CausableClientError
from causable.sdk.sse import TimelineEvent

__all__ = ["CausableClient", "CausableClientError", "TimelineEvent"]
