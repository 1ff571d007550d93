from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


UTC = timezone.utc
DAY = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def get_zone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


def local_midnight(day: date, tz: tzinfo = UTC) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def is_local_midnight(dt: datetime, tz: tzinfo = UTC) -> bool:
    local = ensure_utc(dt).astimezone(tz)
    return local.time() == time.min


def is_all_day_span(start: datetime, end: datetime, tz: tzinfo = UTC) -> bool:
    """True when ``start``-``end`` covers whole local days, midnight to midnight."""

    span = ensure_utc(end) - ensure_utc(start)
    if span <= timedelta(0) or span % DAY:
        return False
    return is_local_midnight(start, tz) and is_local_midnight(end, tz)


def _normalize_fraction(s: str) -> str:
    """Pad or trim fractional seconds to 6 digits."""

    digits = s[:6]
    if len(digits) < 6:
        digits = digits + "0" * (6 - len(digits))
    return digits


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        tz_sign = "+"
        tz_suffix = "00:00"
        if "+" in tail:
            frac, tz_suffix = tail.split("+", 1)
            tz_sign = "+"
        elif "-" in tail:
            frac, tz_suffix = tail.split("-", 1)
            tz_sign = "-"
        else:
            frac = tail
        frac = _normalize_fraction(frac)
        value = f"{head}.{frac}{tz_sign}{tz_suffix}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def parse_date(s: Optional[str]) -> Optional[date]:
    if not s:
        return None
    try:
        return date.fromisoformat(s.strip()[:10])
    except ValueError:
        return None


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339 in UTC."""

    if dt is None:
        return None
    value = ensure_utc(dt)
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


__all__ = [
    "DAY",
    "UTC",
    "ensure_utc",
    "get_zone",
    "is_all_day_span",
    "is_local_midnight",
    "local_midnight",
    "parse_date",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "utc_now",
]
