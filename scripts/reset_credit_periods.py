"""Reset credit balances whose billing period has ended.

Standalone script, meant to run from cron (daily is enough; a balance
whose period ended stays usable until the next run).

Usage:
    python -m scripts.reset_credit_periods

Per due balance:
    1. New allowance from the plan
    2. Rollover plans carry remaining credits forward
    3. Period advances by one month or one year from now
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from aiproxy.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class ResetStats:
    """Statistics from a reset run."""

    balances_reset: int = 0
    started_at: datetime | None = None


async def run_reset(session: AsyncSession, now: datetime | None = None) -> ResetStats:
    """Reset every due balance.

    Args:
        session: Database session.
        now: Reference time (defaults to the current UTC time).

    Returns:
        ResetStats for the run.
    """
    stats = ResetStats(started_at=now or datetime.now(UTC))
    ledger = UsageLedger(session)
    stats.balances_reset = await ledger.reset_expired_periods(stats.started_at)
    logger.info("Credit reset complete: %d balances reset", stats.balances_reset)
    return stats


async def main() -> None:
    """CLI entry point: run the reset against the configured database."""
    import sys

    from aiproxy.core.config import settings
    from aiproxy.core.database import dispose_engine, session_scope

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        async with session_scope() as session:
            result = await run_reset(session)
    finally:
        await dispose_engine()

    logger.info("Final stats: %s", result)
    sys.exit(0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
