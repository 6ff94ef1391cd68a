"""Exceptions raised by the conversion pipeline.

Each carries the HTTP status the API layer answers with, so routers can let
them propagate to the registered exception handler.
"""


class PipelineError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class AuthenticationError(PipelineError):
    """Raised when a webhook signature or caller identity cannot be verified."""

    status_code = 401


class ValidationError(PipelineError):
    """Raised for malformed requests or content that cannot be converted."""

    status_code = 400


class NotFoundError(PipelineError):
    status_code = 404


class RateLimitedError(PipelineError):
    """Raised when a sender exceeds the request window."""

    status_code = 429

    def __init__(self, message: str, *, remaining: int = 0, reset_time: float = 0.0, limit: int = 0):
        super().__init__(message)
        self.remaining = remaining
        self.reset_time = reset_time
        self.limit = limit


class QuotaExceededError(PipelineError):
    """Raised when the account has used its monthly conversions."""

    status_code = 429


class RetryUnavailableError(PipelineError):
    """Raised when a failed conversion has no retained content to retry with."""

    status_code = 409


class GoneError(PipelineError):
    status_code = 410


class ConfigurationError(PipelineError):
    """Raised when a required secret or endpoint is not configured."""

    status_code = 500


class ContentFetchError(RuntimeError):
    """Raised when an article URL cannot be fetched or parsed."""


class InvalidTransitionError(RuntimeError):
    """Raised on a conversion status change the state machine does not allow."""


__all__ = [
    "PipelineError",
    "AuthenticationError",
    "ValidationError",
    "NotFoundError",
    "RateLimitedError",
    "QuotaExceededError",
    "RetryUnavailableError",
    "GoneError",
    "ConfigurationError",
    "ContentFetchError",
    "InvalidTransitionError",
]
