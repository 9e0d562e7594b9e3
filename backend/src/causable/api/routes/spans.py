"""Span REST routes: list and create ledger spans."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from causable.api.sse.change_source import ChangeSource, DirectChangeSource
from causable.api.sse.dependencies import get_change_source
from causable.core.database import get_db_session
from causable.core.middleware import enforce_rate_limit, require_api_key
from causable.core.schemas import ErrorResponse
from causable.spans.schemas import Span, SpanCreate, SpanFilter, Visibility
from causable.spans.service import SpanService

router = APIRouter(
    prefix="/api/spans",
    tags=["spans"],
    dependencies=[Depends(require_api_key), Depends(enforce_rate_limit)],
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)


def get_span_service(
    session: AsyncSession = Depends(get_db_session),
    change_source: ChangeSource = Depends(get_change_source),
) -> SpanService:
    # Only the in-process source needs a direct hand-off; the Postgres
    # source hears about the insert through its trigger.
    direct = change_source if isinstance(change_source, DirectChangeSource) else None
    return SpanService(session, direct)


@router.get("", response_model=list[Span])
async def list_spans(
    service: SpanService = Depends(get_span_service),
    entity_type: str | None = Query(None),
    status: str | None = Query(None),
    trace_id: str | None = Query(None),
    owner_id: str | None = Query(None),
    tenant_id: str | None = Query(None),
    visibility: Visibility | None = Query(None),
    limit: int = Query(50, ge=1, le=1000),
) -> list[Span]:
    """List recent spans, newest first."""
    filters = SpanFilter(
        entity_type=entity_type,
        status=status,
        trace_id=trace_id,
        owner_id=owner_id,
        tenant_id=tenant_id,
        visibility=visibility,
        limit=limit,
    )
    return await service.list_spans(filters)


@router.post("", response_model=Span, responses={409: {"model": ErrorResponse}})
async def create_span(
    body: SpanCreate,
    service: SpanService = Depends(get_span_service),
) -> Span:
    """Append a span to the ledger and push it to live timeline streams."""
    return await service.create_span(body)
