"""Query parameters for the usage history listing.

Pages are 1-indexed. The ``since`` bound lets a dashboard poll for events
newer than the last one it rendered without re-reading earlier pages.
"""

from dataclasses import dataclass
from datetime import datetime

from fastapi import Query

from aiproxy.core.responses import PaginationMeta

MAX_PER_PAGE = 200


@dataclass(frozen=True)
class PaginationParams:
    """A page of usage history, optionally narrowed.

    Attributes:
        page: Page number (1-indexed).
        per_page: Events per page, at most MAX_PER_PAGE.
        event_type: Only events of this type (e.g. "credit_adjustment").
        since: Only events created at or after this instant.
    """

    page: int
    per_page: int
    event_type: str | None = None
    since: datetime | None = None

    def filters(self) -> dict[str, object]:
        """Keyword arguments for ``UsageLedger.history``."""
        return {
            "page": self.page,
            "per_page": self.per_page,
            "event_type": self.event_type,
            "since": self.since,
        }

    def meta(self, total: int) -> PaginationMeta:
        return PaginationMeta(total=total, page=self.page, per_page=self.per_page)


def pagination_params(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=MAX_PER_PAGE),
    event_type: str | None = Query(default=None, max_length=50),
    since: datetime | None = Query(
        default=None, description="ISO-8601 lower bound on created_at"
    ),
) -> PaginationParams:
    """FastAPI dependency for the usage history query string."""
    return PaginationParams(
        page=page, per_page=per_page, event_type=event_type, since=since
    )
