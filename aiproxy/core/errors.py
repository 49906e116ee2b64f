"""API error classes.

WHY CUSTOM ERROR CLASSES:
- Consistent error response format across all endpoints
- Easy to map to HTTP status codes in exception handlers
- Configuration and validation failures surface before any backend call
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "VALIDATION_ERROR").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
        headers: Optional extra response headers (e.g., Retry-After).
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(APIError):
    """Missing or malformed request fields (400)."""

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class ConfigurationError(APIError):
    """Server-side configuration is missing (500).

    Raised when no gateway credentials resolve for a project. The message
    names the missing setting, never its value.
    """

    def __init__(self, message: str) -> None:
        super().__init__(
            code="CONFIGURATION_ERROR",
            message=message,
            status_code=500,
        )


class DispatchExhaustedError(APIError):
    """Every candidate model failed (500).

    The surfaced message is the last candidate's error, the one the
    caller would have seen without fallback.

    Args:
        last_error: Error raised by the final candidate, or None when the
            candidate list was empty.
        failures: (model id, error message) pairs in attempt order.
    """

    def __init__(
        self,
        last_error: BaseException | None,
        failures: list[tuple[str, str]] | None = None,
    ) -> None:
        self.last_error = last_error
        self.failures = failures or []
        message = str(last_error) if last_error is not None else "No candidate models"
        super().__init__(
            code="DISPATCH_EXHAUSTED",
            message=message,
            status_code=500,
            details=[{"model": model, "error": error} for model, error in self.failures]
            or None,
        )


class InsufficientCreditsError(APIError):
    """Not enough prepaid credits for the call (402).

    Args:
        credits_remaining: Balance at the time of the check.
        credits_required: Credits the call needed, when known.
    """

    def __init__(
        self,
        credits_remaining: int,
        credits_required: int | None = None,
    ) -> None:
        detail: dict = {"credits_remaining": credits_remaining}
        if credits_required is not None:
            detail["credits_required"] = credits_required
        super().__init__(
            code="INSUFFICIENT_CREDITS",
            message=(
                "You have run out of credits. "
                "Please upgrade your plan or wait for your credits to reset."
            ),
            status_code=402,
            details=[detail],
        )


class RateLimitExceededError(APIError):
    """Daily request ceiling reached (429).

    Args:
        limit: The ceiling that was hit.
        retry_after_seconds: Seconds until the oldest request leaves the window.
    """

    def __init__(self, limit: int, retry_after_seconds: int) -> None:
        super().__init__(
            code="RATE_LIMITED",
            message=f"You have exceeded your maximum number of requests for the day ({limit})",
            status_code=429,
            details=[{"limit": limit}],
            headers={"Retry-After": str(max(retry_after_seconds, 1))},
        )
