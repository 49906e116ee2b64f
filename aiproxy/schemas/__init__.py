"""Pydantic request/response schemas for API endpoints."""

from aiproxy.schemas.proxy import ProxyRequest
from aiproxy.schemas.usage import BalanceResponse, UsageEventResponse

__all__ = [
    # Proxy
    "ProxyRequest",
    # Usage
    "BalanceResponse",
    "UsageEventResponse",
]
