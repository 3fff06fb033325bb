"""Work-extension claim window and leave request helpers."""
from datetime import date, datetime, timedelta
from typing import Optional

WORK_EXTENSION = 'Work Extension'
WORK_EXTENSION_COLOR = '#f39c12'


def _managed_day(entry: dict) -> Optional[date]:
    raw = entry.get('managed_at')
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return datetime.fromisoformat(str(raw)).date()
    except ValueError:
        return None


def expires_on(entry: dict, expiry_days: int) -> Optional[date]:
    managed = _managed_day(entry)
    return managed + timedelta(days=expiry_days) if managed else None


def work_extension_state(entry: dict, expiry_days: int, today: Optional[date] = None) -> str:
    """pending | rejected | claimed | expired | not-claimed."""
    status = entry.get('status')
    if status in ('pending', 'rejected'):
        return status
    if entry.get('work_extension_status') == 'claimed':
        return 'claimed'
    deadline = expires_on(entry, expiry_days)
    if deadline is not None and (today or date.today()) > deadline:
        return 'expired'
    return 'not-claimed'


def is_work_extension(entry: dict) -> bool:
    return entry.get('type') == WORK_EXTENSION
