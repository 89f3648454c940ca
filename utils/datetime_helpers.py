"""
Datetime helper utilities to ensure consistent timezone handling across the application.

Deal timestamps are stored as timezone-aware UTC values. Some backends (SQLite in
local runs and tests) hand them back naive, so every comparison goes through
ensure_aware_utc() first.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC time as an aware datetime"""
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (that is how they were written).

    Example:
        >>> ensure_aware_utc(datetime(2024, 1, 1)).tzinfo is timezone.utc
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    aware = ensure_aware_utc(dt)
    return aware.isoformat() if aware else None


def format_duration(delta: timedelta) -> str:
    """Human readable duration, e.g. '6 days, 23 hours' or '45 minutes'"""
    total_seconds = max(int(delta.total_seconds()), 0)
    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes and not days:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return ", ".join(parts) if parts else "less than a minute"
