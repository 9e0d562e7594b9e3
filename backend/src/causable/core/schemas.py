"""Pydantic v2 response schemas shared across routes."""

from __future__ import annotations

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response body."""

    code: str
    message: str
    detail: dict[str, object] | None = None


class HealthResponse(BaseModel):
    status: str
    service: str
    change_source: str
    active_streams: int
