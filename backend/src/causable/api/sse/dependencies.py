"""FastAPI dependencies for the timeline stream.

The session registry and change source are created once in the app
lifespan and live on ``app.state``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from causable.api.sse.change_source import ChangeSource
    from causable.api.sse.registry import SessionRegistry


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def get_change_source(request: Request) -> ChangeSource:
    return request.app.state.change_source
