"""
Timezone utilities for retry scheduling.
Leads carry an IANA timezone name; anything missing or unknown falls back
to the configured default so slot math never fails a sweep.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_TIMEZONE = "America/Sao_Paulo"


def get_zoneinfo(timezone_str: Optional[str] = None, default: Optional[str] = None) -> ZoneInfo:
    """Get ZoneInfo object, falling back to the default zone if unknown."""
    if timezone_str:
        try:
            return ZoneInfo(timezone_str)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r - using default", timezone_str)
    try:
        return ZoneInfo(default or FALLBACK_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(FALLBACK_TIMEZONE)


def as_utc(dt: Any) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC instant. Naive values are taken as UTC."""
    if not isinstance(dt, datetime):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
