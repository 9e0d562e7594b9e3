"""Custom exceptions for the Causable API.

HTTP-facing exceptions map to a status code and error code. The global
exception handler in api/main.py converts them to ``ErrorResponse`` bodies.
"""


class CausableError(Exception):
    """Base exception for all Causable errors."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        detail: dict[str, object] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.message = message or self.__class__.message
        self.detail = detail
        self.headers = headers
        super().__init__(self.message)


class UnauthorisedError(CausableError):
    status_code = 401
    code = "unauthorised"
    message = "Authentication required."

    def __init__(self, message: str | None = None, detail: dict[str, object] | None = None):
        super().__init__(
            message,
            detail,
            headers={"WWW-Authenticate": 'Bearer realm="Causable API"'},
        )


class RateLimitedError(CausableError):
    status_code = 429
    code = "rate_limited"
    message = "Rate limit exceeded."


class ConflictError(CausableError):
    status_code = 409
    code = "conflict"
    message = "Resource already exists."


class StreamSessionError(CausableError):
    """Invalid operation on a stream session's lifecycle (e.g. starting it twice)."""

    code = "stream_session_error"
    message = "Invalid stream session operation."
