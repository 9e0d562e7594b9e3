"""SQLAlchemy 2.0 model for the span ledger table.

Uses dialect-agnostic types (JSON, DateTime) so the model works with both
PostgreSQL (production) and SQLite (unit tests). JSON columns become JSONB
on PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from causable.core.database import Base
from causable.spans.schemas import Span

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SpanRecord(Base):
    """One row of the universal registry. Rows are append-only; deletion is a flag."""

    __tablename__ = "universal_registry"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    who: Mapped[str] = mapped_column(Text, nullable=False)
    did: Mapped[str | None] = mapped_column(Text, nullable=True)
    this: Mapped[str] = mapped_column(Text, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    parent_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_to: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    owner_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(Text, nullable=False, default="private")

    status: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    language: Mapped[str | None] = mapped_column(Text, nullable=True)
    runtime: Mapped[str | None] = mapped_column(Text, nullable=True)
    input: Mapped[Any] = mapped_column(JSONType, nullable=True)
    output: Mapped[Any] = mapped_column(JSONType, nullable=True)
    error: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # type: ignore[type-arg]

    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)

    prev_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    curr_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict | None] = mapped_column(  # type: ignore[type-arg]
        "metadata", JSONType, nullable=True
    )

    def to_span(self) -> Span:
        return Span(
            id=self.id,
            seq=self.seq,
            entity_type=self.entity_type,
            who=self.who,
            did=self.did,
            this=self.this,
            at=self.at,
            parent_id=self.parent_id,
            related_to=self.related_to,
            owner_id=self.owner_id,
            tenant_id=self.tenant_id,
            visibility=self.visibility,  # type: ignore[arg-type]
            status=self.status,
            is_deleted=self.is_deleted,
            name=self.name,
            description=self.description,
            code=self.code,
            language=self.language,
            runtime=self.runtime,
            input=self.input,
            output=self.output,
            error=self.error,
            duration_ms=self.duration_ms,
            trace_id=self.trace_id,
            prev_hash=self.prev_hash,
            curr_hash=self.curr_hash,
            signature=self.signature,
            public_key=self.public_key,
            metadata=self.metadata_,
        )
