"""Span service: persist and query ledger spans.

After a span commits it is handed to the change source when that source
is in-process (``DirectChangeSource``). With the Postgres source the insert
trigger's NOTIFY does the hand-off, so the service stays out of the way to
avoid double delivery.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from causable.core.exceptions import ConflictError
from causable.spans.models import SpanRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from causable.api.sse.change_source import ChangeSource
    from causable.spans.schemas import Span, SpanCreate, SpanFilter

logger = structlog.get_logger()


class SpanService:
    def __init__(self, session: AsyncSession, change_source: ChangeSource | None = None) -> None:
        self._session = session
        self._change_source = change_source

    async def create_span(self, data: SpanCreate) -> Span:
        """Insert a span, commit, then notify live streams. Raises 409 on a duplicate id."""
        record = SpanRecord(
            id=data.id or str(uuid.uuid4()),
            seq=data.seq if data.seq is not None else 0,
            entity_type=data.entity_type or "unknown",
            who=data.who or "unknown",
            did=data.did,
            this=data.this or "unknown",
            at=data.at or datetime.now(UTC),
            parent_id=data.parent_id,
            related_to=data.related_to,
            owner_id=data.owner_id,
            tenant_id=data.tenant_id,
            visibility=data.visibility or "private",
            status=data.status,
            is_deleted=False,
            name=data.name,
            description=data.description,
            code=data.code,
            language=data.language,
            runtime=data.runtime,
            input=data.input,
            output=data.output,
            error=data.error,
            duration_ms=data.duration_ms,
            trace_id=data.trace_id,
            prev_hash=data.prev_hash,
            curr_hash=data.curr_hash,
            signature=data.signature,
            public_key=data.public_key,
            metadata_=data.metadata,
        )
        self._session.add(record)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            logger.warning("span_create_conflict", span_id=record.id)
            raise ConflictError(f"Span {record.id} already exists") from None

        span = record.to_span()
        logger.info(
            "span_created",
            span_id=span.id,
            entity_type=span.entity_type,
            who=span.who,
            did=span.did,
        )

        if self._change_source is not None:
            self._change_source.on_span_available(span)
        return span

    async def list_spans(self, filters: SpanFilter) -> list[Span]:
        """Most recent non-deleted spans matching ``filters``, newest first."""
        query = select(SpanRecord).where(SpanRecord.is_deleted.is_(False))

        if filters.entity_type is not None:
            query = query.where(SpanRecord.entity_type == filters.entity_type)
        if filters.status is not None:
            query = query.where(SpanRecord.status == filters.status)
        if filters.trace_id is not None:
            query = query.where(SpanRecord.trace_id == filters.trace_id)
        if filters.owner_id is not None:
            query = query.where(SpanRecord.owner_id == filters.owner_id)
        if filters.tenant_id is not None:
            query = query.where(SpanRecord.tenant_id == filters.tenant_id)
        if filters.visibility is not None:
            query = query.where(SpanRecord.visibility == filters.visibility)

        query = query.order_by(SpanRecord.at.desc(), SpanRecord.seq.desc()).limit(filters.limit)
        result = await self._session.execute(query)
        return [record.to_span() for record in result.scalars().all()]
