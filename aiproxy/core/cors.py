"""Cross-origin headers attached to every response.

The proxy is called from browser code served on arbitrary project domains,
so it answers with a wildcard origin and no credentials. The same fixed
header set goes on buffered responses, streaming responses, error
envelopes and the OPTIONS preflight.

This is a raw ASGI middleware (not BaseHTTPMiddleware) so streaming bodies
pass through untouched: only the ``http.response.start`` message is edited.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

CROSS_ORIGIN_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}
"""Fixed header set. Max-Age is 24 hours."""


def apply_cross_origin_headers(headers: MutableMapping[str, Any]) -> None:
    """Merge the cross-origin header set onto an existing header mapping.

    Existing headers are kept; only the cross-origin keys are overwritten.

    Args:
        headers: Response headers (dict or Starlette MutableHeaders).
    """
    for name, value in CROSS_ORIGIN_HEADERS.items():
        headers[name] = value


class CrossOriginMiddleware:
    """Attach cross-origin headers and answer preflight requests."""

    def __init__(self, app: ASGIApp) -> None:
        """Initialize with the next ASGI application.

        Args:
            app: The next ASGI application in the middleware chain.
        """
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Process an ASGI request.

        Args:
            scope: ASGI connection scope.
            receive: ASGI receive callable.
            send: ASGI send callable.
        """
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            await _send_preflight(send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                apply_cross_origin_headers(MutableHeaders(scope=message))
            await send(message)

        await self.app(scope, receive, send_with_headers)


async def _send_preflight(send: Send) -> None:
    """Reply to an OPTIONS request with 204 and the cross-origin headers."""
    headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in CROSS_ORIGIN_HEADERS.items()
    ]
    await send({"type": "http.response.start", "status": 204, "headers": headers})
    await send({"type": "http.response.body", "body": b"", "more_body": False})
