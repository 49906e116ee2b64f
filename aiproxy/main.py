"""FastAPI application entry point.

This module creates and configures the FastAPI application, including:
- Exception handlers mapping errors onto the flat error envelope
- Cross-origin middleware (wildcard origin, fixed header set)
- Reconciliation worker lifecycle
- API v1 router mounting and the health check
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from aiproxy.api.v1.router import router as v1_router
from aiproxy.core.config import settings
from aiproxy.core.cors import CrossOriginMiddleware, apply_cross_origin_headers
from aiproxy.core.database import async_session_factory, dispose_engine
from aiproxy.core.errors import APIError
from aiproxy.core.rate_limiting import limiter, rate_limit_exceeded_handler
from aiproxy.core.responses import ErrorResponse
from aiproxy.providers.factory import close_providers
from aiproxy.services.reconciliation_worker import ReconciliationWorker
from aiproxy.services.usage_report import UsageReportClient

logger = structlog.get_logger()


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Handle custom API errors.

    Args:
        request: The incoming request.
        exc: The APIError that was raised.

    Returns:
        JSONResponse with error envelope, status code and any extra headers.
    """
    if exc.status_code >= 500:
        logger.error("api_error", code=exc.code, message=exc.message)
    return ErrorResponse(
        error=exc.message, code=exc.code, details=exc.details
    ).to_response(exc.status_code, exc.headers)


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors from FastAPI.

    Missing projectId/options and malformed JSON land here as 400.

    Args:
        request: The incoming request.
        exc: The RequestValidationError from Pydantic.

    Returns:
        JSONResponse with VALIDATION_ERROR code and field-level details.
    """
    return ErrorResponse(
        error="Missing or invalid request fields",
        code="VALIDATION_ERROR",
        details=[
            {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
            for e in exc.errors()
        ],
    ).to_response(400)


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions.

    Returns 500 INTERNAL_ERROR without exposing stack traces. This handler
    runs outside the cross-origin middleware, so the headers are added here.

    Args:
        request: The incoming request.
        exc: The unhandled exception.

    Returns:
        JSONResponse with generic error message (500).
    """
    logger.exception("Unhandled exception", exc_info=exc, path=str(request.url.path))

    response = ErrorResponse(
        error="An unexpected error occurred", code="INTERNAL_ERROR"
    ).to_response(500)
    apply_cross_origin_headers(response.headers)
    return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the reconciliation worker; release clients and the pool on shutdown."""
    worker = ReconciliationWorker(async_session_factory, UsageReportClient())
    worker.start()
    app.state.reconciliation_worker = worker
    try:
        yield
    finally:
        await worker.stop()
        await close_providers()
        await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    WHY FACTORY FUNCTION:
    - Enables testing with different configurations
    - Clear separation between app creation and startup

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="AI Proxy API",
        version="1.0.0",
        description="Metered AI gateway with model fallback",
        lifespan=lifespan,
    )

    app.add_middleware(CrossOriginMiddleware)

    # Order matters: specific handlers first, then catch-all
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.state.limiter = limiter

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Health check endpoint for monitoring."""
        return {"status": "healthy", "environment": settings.environment}

    return app


# Used by uvicorn: uvicorn aiproxy.main:app
app = create_app()
