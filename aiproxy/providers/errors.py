"""Provider error taxonomy.

WHY SEPARATE ERROR CLASSES:
- Adapters map SDK-specific exceptions onto one hierarchy
- The usage report client retries TransientError only
- The dispatcher treats every class the same: try the next candidate
"""


__all__ = [
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ContextLengthError",
    "TransientError",
    "StructuredOutputError",
    "StreamSourceError",
]


class ProviderError(Exception):
    """Base class for all provider errors.

    All provider-specific exceptions should inherit from this class,
    allowing callers to catch all provider errors with a single handler.
    """

    pass


class RateLimitError(ProviderError):
    """Rate limit exceeded upstream.

    May carry a retry_after_seconds hint from the provider.
    """

    def __init__(self, message: str, retry_after_seconds: float | None = None):
        """Initialize RateLimitError.

        Args:
            message: Error description from the provider.
            retry_after_seconds: Optional hint from provider on when to retry.
        """
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class AuthenticationError(ProviderError):
    """Invalid or expired gateway key."""

    pass


class ModelNotFoundError(ProviderError):
    """Requested model doesn't exist or isn't accessible with this key."""

    pass


class ContentFilterError(ProviderError):
    """Content blocked by the provider's safety filter."""

    pass


class ContextLengthError(ProviderError):
    """Input exceeded the model's context window."""

    pass


class TransientError(ProviderError):
    """Temporary failure (network, server overload).

    Safe to retry with exponential backoff. Includes connection errors,
    timeouts and 5xx responses.
    """

    pass


class StructuredOutputError(ProviderError):
    """Model output did not parse as JSON or failed schema validation.

    Attributes:
        issues: Validation issues, one string per failing path.
    """

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or []


class StreamSourceError(ProviderError):
    """A chunk source failed after the response had started.

    Raised from the body iterator so the server aborts the connection
    instead of finishing the chunked body cleanly.
    """

    pass
