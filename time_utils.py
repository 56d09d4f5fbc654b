from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"

# used when the tz database is missing from the host
FIXED_OFFSETS: Dict[str, Tuple[str, int]] = {
    "asia/tokyo": ("JST", 9),
    "tokyo": ("JST", 9),
    "jst": ("JST", 9),
    "utc": ("UTC", 0),
}


def resolve_timezone(name: Optional[str]) -> tzinfo:
    key = (name or DEFAULT_TIMEZONE).strip()
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Timezone %s not in the tz database (%s)", key, exc)
    fixed = FIXED_OFFSETS.get(key.lower())
    if fixed:
        label, hours = fixed
        logger.warning("Using fixed offset %s (UTC%+d) for %s", label, hours, key)
        return timezone(timedelta(hours=hours), name=label)
    logger.warning("Unknown timezone %s, scheduling in UTC", key)
    return timezone.utc


def now_in_tz(tz) -> datetime:
    if tz:
        return datetime.now(tz)
    return datetime.now().astimezone()


def fire_time_today(hour: int, minute: int, now: datetime) -> datetime:
    """The given time of day on the same calendar day as ``now``."""
    return now.replace(hour=hour, minute=minute, second=0, microsecond=0)


def format_tz_offset(tz, at: Optional[datetime] = None) -> str:
    """``+09:00`` style offset of ``tz`` at ``at`` (default: now)."""
    moment = (at or now_in_tz(tz)).astimezone(tz)
    offset = moment.utcoffset()
    if offset is None:
        return ""
    sign = "-" if offset < timedelta(0) else "+"
    hours, rest = divmod(abs(offset), timedelta(hours=1))
    return f"{sign}{hours:02d}:{rest // timedelta(minutes=1):02d}"
