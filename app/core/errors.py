"""Error taxonomy for the AI assistant."""


class AIError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "AI_ERROR"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AIError):
    """Bad request shape or content length. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class QuotaExceededError(AIError):
    """A tier limit was reached."""

    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, limit_type: str, limit: int) -> None:
        super().__init__(message)
        self.limit_type = limit_type
        self.limit = limit


class PersistenceError(AIError):
    """A quota/settings/log write failed."""

    code = "PERSISTENCE_ERROR"


class StreamProtocolError(AIError):
    """A malformed SSE frame was received."""

    status_code = 502
    code = "STREAM_PROTOCOL_ERROR"


class UpstreamError(AIError):
    """Failure talking to the chat-completion endpoint."""

    status_code = 502
    code = "API_ERROR"

    def __init__(self, message: str, processing_time_ms: int = 0) -> None:
        super().__init__(message)
        self.processing_time_ms = processing_time_ms

    @property
    def error_code(self) -> str:
        return self.code


class UpstreamAuthError(UpstreamError):
    """The endpoint rejected our credentials. Fatal misconfiguration."""

    code = "UNAUTHORIZED"


class UpstreamRateLimitError(UpstreamError):
    status_code = 503
    code = "RATE_LIMIT_EXCEEDED"
    retryable = True


class UpstreamBadRequestError(UpstreamError):
    code = "BAD_REQUEST"


class UpstreamAPIError(UpstreamError):
    code = "API_ERROR"


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    code = "TIMEOUT"
    retryable = True


class UpstreamNetworkError(UpstreamError):
    code = "NETWORK_ERROR"
    retryable = True


class UpstreamStreamError(UpstreamError):
    """The chunked response broke after it was opened."""

    code = "STREAM_ERROR"
