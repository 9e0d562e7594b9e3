"""API-key authentication.

Clients send ``Authorization: Bearer <api key>``. Keys come from
``CAUSABLE_API_KEYS`` (comma-separated). Outside production, an empty key
list falls back to the single development key ``dev``.
"""

from __future__ import annotations

import hmac
import re
from collections.abc import Iterable

import structlog

from causable.core.exceptions import UnauthorisedError

logger = structlog.get_logger()

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


class ApiKeyAuth:
    def __init__(self, api_keys: Iterable[str]) -> None:
        self._keys = frozenset(api_keys)
        if not self._keys:
            logger.warning("auth_no_api_keys_configured")

    @property
    def key_count(self) -> int:
        return len(self._keys)

    def verify_header(self, authorization: str | None) -> str:
        """Validate an Authorization header value and return the API key. Raises 401."""
        if not authorization:
            raise UnauthorisedError("Missing Authorization header")

        match = _BEARER_RE.match(authorization.strip())
        if match is None:
            raise UnauthorisedError("Invalid Authorization format. Expected: Bearer <token>")

        token = match.group(1).strip()
        if not any(hmac.compare_digest(token, key) for key in self._keys):
            logger.warning("auth_api_key_invalid", key_prefix=token[:3])
            raise UnauthorisedError("Invalid API key")
        return token
