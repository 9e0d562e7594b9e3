"""Health check routes at / and /health. No auth required."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from causable.api.sse.change_source import ChangeSource
from causable.api.sse.dependencies import get_change_source, get_session_registry
from causable.api.sse.registry import SessionRegistry
from causable.core.schemas import HealthResponse

router = APIRouter(tags=["health"])

SERVICE_NAME = "causable-cloud"


@router.get("/", response_model=HealthResponse)
@router.get("/health", response_model=HealthResponse)
async def health_check(
    change_source: ChangeSource = Depends(get_change_source),
    registry: SessionRegistry = Depends(get_session_registry),
) -> HealthResponse:
    """Reports ``degraded`` while the change source cannot reach its upstream."""
    return HealthResponse(
        status="ok" if change_source.healthy else "degraded",
        service=SERVICE_NAME,
        change_source=change_source.status,
        active_streams=registry.active_count,
    )
