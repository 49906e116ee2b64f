"""Per-identity daily request ceilings.

Rolling 24-hour moving window, keyed ``user:{id}`` for signed-in callers
and ``ip:{addr}`` for anonymous ones. The ceiling depends on the user type
(``guest`` / ``regular``); anonymous callers get their own, lower ceiling.

Counts live in process memory, so they reset on restart and are not
shared between workers.
"""

import logging
import time
import uuid
from dataclasses import dataclass

from limits import RateLimitItemPerDay
from limits.aio.storage import MemoryStorage
from limits.aio.strategies import MovingWindowRateLimiter

from aiproxy.core.config import Settings, settings
from aiproxy.core.errors import RateLimitExceededError

logger = logging.getLogger(__name__)

_NAMESPACE = "ai-proxy-daily"


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling.

    Attributes:
        user_id: Signed-in user, or None for anonymous callers.
        user_type: "guest" or "regular" for signed-in users.
        client_ip: Best-effort client address.
    """

    user_id: uuid.UUID | None
    user_type: str
    client_ip: str

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def rate_limit_key(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"ip:{self.client_ip}"


class EntitlementsService:
    """Enforces the daily request ceiling.

    Args:
        app_settings: Settings for the ceilings.
        storage: limits storage backend (in-memory by default).
    """

    def __init__(
        self,
        app_settings: Settings | None = None,
        storage: MemoryStorage | None = None,
    ) -> None:
        self._settings = app_settings or settings
        self._storage = storage or MemoryStorage()
        self._limiter = MovingWindowRateLimiter(self._storage)

    def ceiling_for(self, identity: CallerIdentity) -> int:
        """Daily request ceiling for an identity."""
        if not identity.is_authenticated:
            return self._settings.anonymous_max_requests_per_day
        return self._settings.max_requests_per_day.get(
            identity.user_type,
            self._settings.max_requests_per_day.get("regular", 0),
        )

    async def check_and_record(self, identity: CallerIdentity) -> None:
        """Count one request against the identity's window.

        Args:
            identity: The caller.

        Raises:
            RateLimitExceededError: The ceiling for the last 24 hours is reached.
        """
        ceiling = self.ceiling_for(identity)
        item = RateLimitItemPerDay(ceiling, namespace=_NAMESPACE)
        key = identity.rate_limit_key

        if await self._limiter.hit(item, key):
            return

        stats = await self._limiter.get_window_stats(item, key)
        retry_after = int(stats.reset_time - time.time())
        logger.warning("Daily request ceiling of %d reached for %s", ceiling, key)
        raise RateLimitExceededError(limit=ceiling, retry_after_seconds=retry_after)

    async def reset(self) -> None:
        """Clear all counters (for tests)."""
        await self._storage.reset()
