"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes; everything we store is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_key(value: Optional[datetime.datetime] = None) -> str:
    """Return the ``YYYY-MM`` calendar month of *value* (default: now)."""
    value = as_utc(value) or utc_now()
    return f"{value.year:04d}-{value.month:02d}"


def parse_datetime(raw) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime.datetime):
        return as_utc(raw)
    try:
        text = str(raw).replace("Z", "+00:00")
        return as_utc(datetime.datetime.fromisoformat(text))
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def to_decimal(value) -> Optional[Decimal]:
    """Convert *value* to ``Decimal`` via ``str`` so floats keep their literal form."""
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return result if result.is_finite() else None


def money(value: Decimal) -> Decimal:
    """Round *value* to cents."""
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def from_timestamp(value) -> Optional[datetime.datetime]:
    """Convert a Unix timestamp (seconds) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        return datetime.datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.warning("Could not convert timestamp: %r", value)
        return None
