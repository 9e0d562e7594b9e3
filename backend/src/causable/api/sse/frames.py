"""SSE wire framing for the timeline stream.

Every frame is newline-delimited and terminated by a blank line. We omit
the ``event:`` line so all frames reach ``EventSource.onmessage``; clients
tell control frames from spans by the ``type`` key in the JSON payload.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from causable.spans.schemas import Span

CONNECTED_MESSAGE = "Timeline stream connected"

KEEP_ALIVE_FRAME = ": keep-alive\n\n"


def _data_frame(payload: str) -> str:
    return f"data: {payload}\n\n"


def handshake_frame(message: str = CONNECTED_MESSAGE) -> str:
    return _data_frame(json.dumps({"type": "connected", "message": message}))


def span_frame(span: Span) -> str:
    """Serialize the whole span record. JSON output never contains raw newlines."""
    return _data_frame(span.model_dump_json())


def error_frame(error: str) -> str:
    return _data_frame(json.dumps({"type": "error", "error": error}))
