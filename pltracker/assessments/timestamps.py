"""
Due-time resolution for PrairieLearn assessments.

Two parsers turn platform text into instants:

- parse_prairielearn_timestamp() reads the access-window table cells, which look
  like "2024-03-01 23:59:00-06 (CST)".
- parse_availability_fallback() reads the free-text availability column, e.g.
  "Assessment open until 23:59, Fri, Mar 1 (CST)". That text has no year, so the
  current year is assumed, rolling to next year when the date would be more than
  120 days in the past.

Instants are returned as UTC ISO strings with millisecond precision ("...Z").
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as dateutil_parser

ROLLOVER_DAYS = 120

_TZ_LABEL_RE = re.compile(r"\s*\([^)]+\)\s*$")
_FIRST_SPACE_RE = re.compile(r"\s+")
_BARE_OFFSET_RE = re.compile(r"([+-]\d{2})$")
_UNTIL_RE = re.compile(
    r"until\s+(\d{1,2}):(\d{2}),\s*\w{3},\s*([A-Za-z]{3})\s+(\d{1,2})",
    re.I,
)
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def to_iso(dt: datetime) -> str:
    """UTC ISO-8601 with milliseconds and a Z suffix. Naive datetimes are local time."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO string to an aware datetime, or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = dateutil_parser.isoparse(value.strip())
        if dt.tzinfo is None:
            dt = dt.astimezone()
    except (ValueError, OverflowError):
        return None
    return dt


def _to_iso_or_none(dt: datetime) -> Optional[str]:
    # instants at the datetime bounds may not survive the move to UTC
    try:
        return to_iso(dt)
    except (ValueError, OverflowError):
        return None


def parse_prairielearn_timestamp(raw: Any) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return None

    without_label = _TZ_LABEL_RE.sub("", raw).strip()
    if not without_label:
        return None

    normalized = _FIRST_SPACE_RE.sub("T", without_label, count=1)
    normalized = _BARE_OFFSET_RE.sub(r"\1:00", normalized)

    dt = parse_iso(normalized)
    return _to_iso_or_none(dt) if dt is not None else None


def parse_availability_fallback(text: Any, now: Optional[datetime] = None) -> Optional[str]:
    if not isinstance(text, str):
        return None

    match = _UNTIL_RE.search(text)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2))
    month = _MONTHS.get(match.group(3).lower())
    day = int(match.group(4))

    if month is None or not 0 <= hour <= 23 or not 0 <= minute <= 59 or not 1 <= day <= 31:
        return None

    if now is None:
        now = datetime.now()
    elif now.tzinfo is not None:
        now = now.astimezone().replace(tzinfo=None)

    try:
        candidate = datetime(now.year, month, day, hour, minute)
        if candidate < now - timedelta(days=ROLLOVER_DAYS):
            candidate = candidate.replace(year=now.year + 1)
    except ValueError:
        # Feb 30, or Feb 29 outside a leap year
        return None

    return _to_iso_or_none(candidate)


def get_effective_due_timestamp(
    access_windows: Optional[Iterable[Any]],
    availability_text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Latest resolvable window end, else the availability-text fallback, else None."""
    latest = None
    latest_dt = None
    for window in access_windows or []:
        end_iso = _window_end(window)
        dt = parse_iso(end_iso)
        if dt is None:
            continue
        if latest_dt is None or dt >= latest_dt:
            latest, latest_dt = end_iso, dt

    if latest is not None:
        return latest

    return parse_availability_fallback(availability_text, now=now)


def _window_end(window: Any) -> Optional[str]:
    if isinstance(window, dict):
        return window.get("end_iso")
    return getattr(window, "end_iso", None)
