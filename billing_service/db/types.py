# billing_service/db/types.py
# Column types shared by every model.
#
# Production runs on PostgreSQL (JSONB, timestamptz); the test suite runs on
# in-memory SQLite. These types keep one model definition valid for both.

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# VND has no minor unit in practice but gateways send decimals
Money = Numeric(14, 2)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    Naive values are assumed to already be UTC. SQLite has no timezone
    storage, so values are written naive and re-tagged as UTC on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
