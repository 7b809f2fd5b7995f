"""Error taxonomy shared by every edge of the order pipeline.

Each error carries the HTTP status it maps to so the API layer can render
it with one exception handler.
"""


class LumiraError(Exception):
    """Base exception for pipeline errors."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthenticationError(LumiraError):
    """Bad, missing, or stale signature; replayed nonce."""

    status_code = 401
    error_type = "authentication_error"


class NotFoundError(LumiraError):
    """Unknown order or user."""

    status_code = 404
    error_type = "not_found"


class ConflictError(LumiraError):
    """Status precondition failed: the event is stale or a duplicate."""

    status_code = 409
    error_type = "conflict"


class InvalidTransitionError(ConflictError):
    """Requested status change is not in the transition table."""

    error_type = "invalid_transition"


class ValidationFailed(LumiraError):
    status_code = 422
    error_type = "validation_error"


class RateLimitError(LumiraError):
    status_code = 429
    error_type = "rate_limit_exceeded"

    def __init__(self, message: str = "rate limit exceeded", retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DispatchError(LumiraError):
    """Outbound delivery to the generation worker exhausted its retries."""

    status_code = 502
    error_type = "dispatch_failed"

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class RetryableError(LumiraError):
    """Transient persistence failure; the sender is expected to retry."""

    status_code = 503
    error_type = "retryable"


class GenerationError(LumiraError):
    """Failure of one generation pipeline step."""

    error_type = "generation_failed"

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step} failed: {message}")
        self.step = step
