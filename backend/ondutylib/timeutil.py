"""
Date and clock-time helpers shared by the report generator and the importers.

Clock times are ``HH:MM`` strings (24h). Calendar dates are ``datetime.date``.
"""
import re
import calendar
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Tuple

_HHMM_RE = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*$')
_MERIDIEM_RE = re.compile(r'(am|pm|a|p)\s*$')


def parse_date(value) -> Optional[date]:
    """Accept a date, a datetime or an ISO string (``YYYY-MM-DD[THH:MM…]``)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def parse_flexible_date(value: str) -> Optional[date]:
    """Parse the date spellings found in hand-made CSV files."""
    if not value or not value.strip():
        return None
    text = value.strip()
    iso = parse_date(text)
    if iso is not None:
        return iso
    for fmt in ('%m/%d/%Y', '%m/%d/%y', '%B %d, %Y', '%b %d, %Y', '%d.%m.%Y'):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def to_minutes(hhmm: Optional[str]) -> Optional[int]:
    if not hhmm:
        return None
    m = _HHMM_RE.match(hhmm)
    if not m:
        return None
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def hours_between(start: Optional[str], end: Optional[str]) -> Optional[float]:
    """Length of ``start``..``end`` in hours, wrapping past midnight."""
    s, e = to_minutes(start), to_minutes(end)
    if s is None or e is None:
        return None
    diff = e - s
    if diff < 0:
        diff += 24 * 60
    return diff / 60


def net_shift_hours(shift: dict) -> Optional[float]:
    """Scheduled hours of a shift minus its unpaid break."""
    total = hours_between(shift.get('start_time'), shift.get('end_time'))
    if total is None:
        return None
    if shift.get('is_unpaid_break'):
        brk = hours_between(shift.get('break_start_time'), shift.get('break_end_time'))
        if brk:
            total -= brk
    return total


def convert_to_24_hour(text: str) -> str:
    """Normalize ``9am``, ``1:30 p``, ``13:00`` … to ``HH:MM``."""
    if not text or not isinstance(text, str):
        return ''
    t = text.strip().lower()
    suffix = _MERIDIEM_RE.search(t)
    is_pm = bool(suffix) and suffix.group(1).startswith('p')
    is_am = bool(suffix) and suffix.group(1).startswith('a')
    if suffix:
        t = t[:suffix.start()].strip()
    parts = t.split(':')
    try:
        hours = int(parts[0]) if parts[0] else 0
    except ValueError:
        hours = 0
    try:
        minutes = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        minutes = 0
    if is_pm and hours < 12:
        hours += 12
    if is_am and hours == 12:
        hours = 0
    return f"{hours:02d}:{minutes:02d}"


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every day of the closed interval; nothing if it is reversed."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def week_bounds(day: date) -> Tuple[date, date]:
    """Monday..Sunday week containing ``day``."""
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def month_bounds(day: date) -> Tuple[date, date]:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def us_short(d: date) -> str:
    """``M/D/YYYY`` without zero padding."""
    return f"{d.month}/{d.day}/{d.year}"


def us_padded(d: date) -> str:
    """``MM/DD/YYYY``."""
    return d.strftime('%m/%d/%Y')


def long_date(d: date) -> str:
    """``January 5, 2024``."""
    return f"{d.strftime('%B')} {d.day}, {d.year}"
