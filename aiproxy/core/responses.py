"""Response envelopes.

Successful JSON bodies are wrapped in ``{"data": ...}`` (plus ``meta`` for
lists). Failures use the flat ``{error, code, details}`` body that proxy
clients already parse, whether the failure came from validation, gating,
dispatch or the rate limiter.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, computed_field
from starlette.responses import JSONResponse

T = TypeVar("T")


class PaginationMeta(BaseModel):
    """Position of a usage history page within the full result set."""

    total: int
    page: int
    per_page: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return -(-self.total // self.per_page)


class DataResponse(BaseModel, Generic[T]):
    data: T


class ListResponse(BaseModel, Generic[T]):
    data: list[T]
    meta: PaginationMeta


class ErrorResponse(BaseModel):
    """Flat error body.

    Attributes:
        error: Human-readable message.
        code: Machine-readable code (e.g. "DISPATCH_EXHAUSTED").
        details: Per-model failures, validation locations, or the remaining
            credit count; None when there is nothing to add.
    """

    error: str
    code: str
    details: list[dict[str, Any]] | None = None

    def to_response(
        self, status_code: int, headers: dict[str, str] | None = None
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code, content=self.model_dump(), headers=headers
        )
