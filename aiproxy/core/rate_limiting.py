"""Burst rate limiting using slowapi.

Caps how fast a single caller can hit the proxy endpoint, on top of the
daily ceilings enforced by the entitlements service. Keys on the session
subject when a valid token is present, otherwise on the client IP as
reported by the reverse proxy.

Usage in routers:
    from aiproxy.core.rate_limiting import limiter

    @router.post("")
    @limiter.limit(settings.rate_limit_proxy)
    async def proxy(request: Request, ...):
        ...
"""

import jwt
from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from aiproxy.core.config import settings
from aiproxy.core.responses import ErrorResponse


def get_client_ip(request: Request) -> str:
    """Resolve the caller's IP address.

    Order: first entry of X-Forwarded-For, then X-Real-IP, then the socket
    peer. Returns "unknown" when none is available.

    Args:
        request: The incoming request.

    Returns:
        Client IP string.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return get_remote_address(request) or "unknown"


def _rate_limit_key_func(request: Request) -> str:
    """Get rate limit key from request.

    Key format:
    - Valid session token: "user:{sub}"
    - Otherwise: "ip:{address}"

    Args:
        request: The incoming request.

    Returns:
        Rate limit key string.
    """
    if settings.auth_enabled:
        token = request.cookies.get(settings.auth_cookie_name)
        if token:
            try:
                payload = jwt.decode(
                    token,
                    settings.auth_secret.get_secret_value(),
                    algorithms=["HS256"],
                    audience=settings.auth_audience,
                    issuer=settings.auth_issuer,
                )
                sub = payload["sub"]
                if len(sub) <= 36:
                    return f"user:{sub}"
            except (jwt.InvalidTokenError, KeyError):
                pass

    return f"ip:{get_client_ip(request)}"


# Global limiter instance
# In-memory storage (single-instance deployment)
# For multi-instance, configure Redis storage via RATELIMIT_STORAGE_URL
limiter = Limiter(
    key_func=_rate_limit_key_func,
    enabled=settings.rate_limit_enabled,
)


def rate_limit_exceeded_handler(
    _request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Handle burst rate limit errors.

    Returns 429 Too Many Requests with the flat error envelope.

    Args:
        request: The incoming request.
        exc: The rate limit exception.

    Returns:
        JSONResponse with 429 status and retry-after header.
    """
    # Window length of the tripped limit, e.g. 60 for "30/minute"
    item = getattr(getattr(exc, "limit", None), "limit", None)
    retry_after = str(item.get_expiry()) if item is not None else "60"

    return ErrorResponse(
        error=f"Rate limit exceeded: {exc.detail}", code="RATE_LIMITED"
    ).to_response(429, {"Retry-After": retry_after})
