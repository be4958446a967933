"""
Date parsing helpers for candidate and page metadata dates.
"""

import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Union


def safe_parse_date(raw: Optional[Union[str, datetime, date]]) -> Optional[datetime]:
    """
    Parse various date formats into timezone-aware datetime.

    Supports ISO strings, RFC 2822 strings (HTTP headers, RSS), datetime/date
    objects, and ``YYYY`` / ``YYYY-MM`` fragments.

    Returns:
        Timezone-aware datetime or None if parsing fails
    """
    if raw is None:
        return None

    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw

    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)

    if not isinstance(raw, str):
        return None

    raw = raw.strip()
    if not raw:
        return None

    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(raw)
        if dt is not None:
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError, IndexError):
        pass

    m = re.match(r"^(\d{4})$", raw)
    if m:
        try:
            return datetime(int(m.group(1)), 1, 1, tzinfo=timezone.utc)
        except ValueError:
            return None

    m = re.match(r"^(\d{4})-(\d{1,2})$", raw)
    if m:
        try:
            return datetime(int(m.group(1)), int(m.group(2)), 1, tzinfo=timezone.utc)
        except ValueError:
            return None

    return None


def age_days(value: Any, now: Optional[datetime] = None) -> Optional[float]:
    """Age of *value* in days relative to *now*; never negative, None if unparseable."""
    parsed = safe_parse_date(value)
    if parsed is None:
        return None
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - parsed).total_seconds() / 86400.0)


def iso_or_none(dt: Optional[Union[datetime, date, str]]) -> Optional[str]:
    """ISO-8601 string for *dt*, or None."""
    parsed = safe_parse_date(dt)
    return parsed.isoformat() if parsed else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
