"""Incremental parser for the timeline stream's SSE frames."""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

import structlog
from pydantic import ValidationError

from causable.spans.schemas import Span

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class TimelineEvent:
    """One decoded stream frame. Keep-alive comments are not surfaced."""

    type: Literal["connected", "span", "error"]
    span: Span | None = None
    message: str | None = None


def decode_data(data: str) -> TimelineEvent | None:
    """Decode the ``data:`` payload of one frame. Unparseable payloads return None."""
    try:
        payload: Any = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("timeline_frame_invalid", data=data[:200])
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "connected":
        return TimelineEvent(type="connected", message=payload.get("message"))
    if kind == "error":
        return TimelineEvent(type="error", message=payload.get("error"))
    try:
        return TimelineEvent(type="span", span=Span.model_validate(payload))
    except ValidationError as exc:
        logger.warning("timeline_span_invalid", error=str(exc))
        return None


async def parse_frames(lines: AsyncIterable[str]) -> AsyncIterator[TimelineEvent]:
    """Turn a stream of text lines into events.

    Multiple ``data:`` lines in one frame are joined with newlines; comment
    lines (``: keep-alive``) and other fields are ignored.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                event = decode_data("\n".join(data_lines))
                data_lines = []
                if event is not None:
                    yield event
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)
