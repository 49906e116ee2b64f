"""SQLAlchemy ORM models.

Import all models here so Alembic autogenerate sees them.
"""

from aiproxy.models.base import Base, CreatedAtMixin, TimestampMixin
from aiproxy.models.ledger import (
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_ESTIMATED,
    CreditBalance,
    UsageEvent,
)

__all__ = [
    "Base",
    "CreatedAtMixin",
    "TimestampMixin",
    "CreditBalance",
    "UsageEvent",
    "EVENT_STATUS_COMPLETED",
    "EVENT_STATUS_ESTIMATED",
]
