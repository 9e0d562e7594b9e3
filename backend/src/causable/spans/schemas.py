"""Pydantic v2 schemas for spans.

A span is one who/did/this/when record of the ledger. ``Span`` is the
immutable value object handed to the broadcaster and serialized onto the
timeline stream; ``SpanCreate`` and ``SpanFilter`` are the REST inputs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Visibility = Literal["private", "tenant", "public"]


class Span(BaseModel):
    """A persisted span. Frozen; unknown columns are carried through as extras."""

    model_config = ConfigDict(frozen=True, extra="allow")

    # Identity
    id: str
    seq: int = 0
    entity_type: str = "unknown"

    # Semantic triple
    who: str
    did: str | None = None
    this: str

    # Timing
    at: datetime | None = None

    # Relationships
    parent_id: str | None = None
    related_to: list[str] | None = None

    # Access control
    owner_id: str | None = None
    tenant_id: str | None = None
    visibility: Visibility | None = None

    # Lifecycle
    status: str | None = None
    is_deleted: bool | None = None

    # Code & execution
    name: str | None = None
    description: str | None = None
    code: str | None = None
    language: str | None = None
    runtime: str | None = None
    input: Any = None
    output: Any = None
    error: dict[str, Any] | None = None

    # Metrics
    duration_ms: float | None = Field(default=None, ge=0)
    trace_id: str | None = None

    # Cryptographic proofs
    prev_hash: str | None = None
    curr_hash: str | None = None
    signature: str | None = None
    public_key: str | None = None

    metadata: dict[str, Any] | None = None


class SpanCreate(BaseModel):
    """Body of ``POST /api/spans``. Missing identity/timing fields get server defaults."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    seq: int | None = Field(default=None, ge=0)
    entity_type: str | None = None
    who: str | None = None
    did: str | None = None
    this: str | None = None
    at: datetime | None = None
    parent_id: str | None = None
    related_to: list[str] | None = None
    owner_id: str | None = None
    tenant_id: str | None = None
    visibility: Visibility | None = None
    status: str | None = None
    name: str | None = None
    description: str | None = None
    code: str | None = None
    language: str | None = None
    runtime: str | None = None
    input: Any = None
    output: Any = None
    error: dict[str, Any] | None = None
    duration_ms: float | None = Field(default=None, ge=0)
    trace_id: str | None = None
    prev_hash: str | None = None
    curr_hash: str | None = None
    signature: str | None = None
    public_key: str | None = None
    metadata: dict[str, Any] | None = None


class SpanFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: str | None = None
    status: str | None = None
    trace_id: str | None = None
    owner_id: str | None = None
    tenant_id: str | None = None
    visibility: Visibility | None = None
    limit: int = Field(default=50, ge=1, le=1000)
