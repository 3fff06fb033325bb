"""
CSV import pipelines: parse -> validate -> construct.

Every parser returns an ``ImportReport`` of tagged results; nothing is
written here. A missing required column or an import with no valid rows
raises ``ImportAbort`` before the caller persists anything.
"""
import io
import re
import csv
import uuid
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .names import find_employee_by_name
from .timeutil import parse_date, parse_flexible_date, convert_to_24_hour

_log = logging.getLogger('onduty')

COLOR_NAMES = {
    'black': '#000000',
    'white': '#ffffff',
    'red': '#ef4444',
    'green': '#22c55e',
    'blue': '#3b82f6',
    'yellow': '#eab308',
    'orange': '#f97316',
    'purple': '#8b5cf6',
    'pink': '#d946ef',
    'teal': '#14b8a6',
    'cyan': '#06b6d4',
    'gray': '#6b7280',
}
_TIME_RANGE_RE = re.compile(
    r'(\d{1,2}(?::\d{2})?\s*(?:am|pm|a|p)?)\s*-\s*(\d{1,2}(?::\d{2})?\s*(?:am|pm|a|p)?)',
    re.IGNORECASE,
)
_ROLES = ('admin', 'manager', 'member')
DEFAULT_SHIFT_COLOR = '#9b59b6'


class ImportAbort(Exception):
    """The whole import is rejected (bad header, nothing usable)."""


@dataclass
class Imported:
    row: int
    record: Dict[str, Any]


@dataclass
class Skipped:
    row: int
    reason: str


@dataclass
class ImportReport:
    results: List[Union[Imported, Skipped]] = field(default_factory=list)

    def add(self, result: Union[Imported, Skipped]) -> None:
        if isinstance(result, Skipped):
            _log.warning("Import row %d skipped: %s", result.row, result.reason)
        self.results.append(result)

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [r.record for r in self.results if isinstance(r, Imported)]

    @property
    def skipped(self) -> List[Skipped]:
        return [r for r in self.results if isinstance(r, Skipped)]

    @property
    def errors(self) -> List[str]:
        return [f"Row {s.row}: {s.reason}" for s in self.skipped]

    def summary(self, imported: Optional[int] = None) -> Dict[str, Any]:
        return {
            'imported': len(self.records) if imported is None else imported,
            'skipped': len(self.skipped),
            'errors': self.errors,
        }

    def require_any(self, message: str) -> 'ImportReport':
        if not self.records:
            raise ImportAbort(message)
        return self


def decode_csv(content: bytes) -> str:
    """Try UTF-8 with BOM first, then latin-1."""
    try:
        return content.decode('utf-8-sig')
    except UnicodeDecodeError:
        return content.decode('latin-1')


def _dict_rows(text: str, required: Iterable[str], case_insensitive: bool = False):
    """Yield ``(row_number, row)`` after checking the header for ``required`` columns."""
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
    present = {h.lower() for h in headers} if case_insensitive else set(headers)
    missing = [h for h in required if (h.lower() if case_insensitive else h) not in present]
    if missing:
        raise ImportAbort(f"Missing required columns in CSV: {', '.join(missing)}")
    for i, raw in enumerate(reader, start=2):  # row 1 = header
        row = {}
        for k, v in raw.items():
            if k is None:
                continue
            key = k.strip().lower() if case_insensitive else k.strip()
            row[key] = (v or '').strip() if isinstance(v, str) else ''
        if any(row.values()):
            yield i, row


def _parse_number(text: str) -> Optional[float]:
    try:
        return float(text.replace(',', ''))
    except (AttributeError, ValueError):
        return None


def normalize_color(value: str) -> str:
    v = (value or '').strip().lower()
    if v.startswith('#'):
        return v
    return COLOR_NAMES.get(v, '#000000')


# ── Holidays ───────────────────────────────────────────────────
def parse_holidays(text: str) -> ImportReport:
    report = ImportReport()
    for i, row in _dict_rows(text, ('Date', 'Title')):
        day = parse_flexible_date(row.get('Date', ''))
        title = row.get('Title', '')
        if day is None:
            report.add(Skipped(i, f"invalid date '{row.get('Date', '')}'"))
        elif not title:
            report.add(Skipped(i, "title is empty"))
        else:
            report.add(Imported(i, {'date': day, 'title': title}))
    return report.require_any("No valid holidays could be parsed. Check the Date and Title columns.")


# ── Leave types ────────────────────────────────────────────────
def parse_leave_types(text: str) -> ImportReport:
    report = ImportReport()
    for i, row in _dict_rows(text, ('Type', 'Color'), case_insensitive=True):
        leave_type = row.get('type', '')
        if not leave_type:
            report.add(Skipped(i, "type is empty"))
            continue
        report.add(Imported(i, {'type': leave_type, 'color': normalize_color(row.get('color', ''))}))
    return report.require_any("No valid leave types could be parsed.")


# ── Members ────────────────────────────────────────────────────
def parse_members(text: str, existing_emails: Iterable[str]) -> ImportReport:
    taken = {e.lower() for e in existing_emails if e}
    report = ImportReport()
    for i, row in _dict_rows(text, ('First Name', 'Last Name', 'Email')):
        first, last, email = row.get('First Name', ''), row.get('Last Name', ''), row.get('Email', '')
        if not (first and last and email):
            report.add(Skipped(i, "First Name, Last Name and Email are required"))
            continue
        if email.lower() in taken:
            report.add(Skipped(i, f"email {email} already exists"))
            continue
        taken.add(email.lower())
        role = (row.get('Role') or '').lower()
        report.add(Imported(i, {
            'first_name': first,
            'last_name': last,
            'middle_initial': (row.get('M.I.') or '')[:1] or None,
            'email': email,
            'position': row.get('Position') or None,
            'birth_date': parse_flexible_date(row.get('Birth Date', '')),
            'start_date': parse_flexible_date(row.get('Start Date', '')),
            'group_name': row.get('Group') or row.get('Department') or None,
            'phone': row.get('Phone') or None,
            'employee_number': row.get('Employee Number') or None,
            'password': row.get('Password') or 'password',
            'role': role if role in _ROLES else 'member',
        }))
    return report.require_any("No new members could be parsed.")


# ── Communication allowances ───────────────────────────────────
def parse_allowances(text: str, employees: List[dict], today: Optional[date] = None) -> ImportReport:
    today = today or date.today()
    report = ImportReport()
    for i, row in _dict_rows(text, ('Recipient', 'Load Allocation', 'Load Balance')):
        emp = find_employee_by_name(row.get('Recipient', ''), employees)
        if emp is None:
            report.add(Skipped(i, f"employee '{row.get('Recipient', '')}' not found"))
            continue
        allocation = _parse_number(row.get('Load Allocation', ''))
        balance = _parse_number(row.get('Load Balance', ''))
        if allocation is None or balance is None:
            report.add(Skipped(i, f"invalid number for '{row.get('Recipient', '')}'"))
            continue
        report.add(Imported(i, {
            'employee_id': emp['id'],
            'load_allocation': allocation,
            'balance': balance,
            'as_of_date': parse_flexible_date(row.get('Balance As Of', '')),
            'year': today.year,
            'month': today.month,
        }))
    return report.require_any("No valid data could be parsed. Check employee names and number formats.")


# ── Tardy records ──────────────────────────────────────────────
def parse_tardy(text: str, employees: List[dict]) -> ImportReport:
    report = ImportReport()
    required = ('EMPLOYEE', 'DATE', 'SCHEDULE', 'IN/OUT', 'REMARKS')
    for i, row in _dict_rows(text, required, case_insensitive=True):
        name = row.get('employee', '')
        emp = find_employee_by_name(name, employees)
        if emp is None:
            report.add(Skipped(i, f"employee '{name}' not found"))
            continue
        day = parse_flexible_date(row.get('date', ''))
        if day is None:
            report.add(Skipped(i, f"invalid date '{row.get('date', '')}'"))
            continue
        time_in, _, time_out = row.get('in/out', '').partition('-')
        report.add(Imported(i, {
            'id': str(uuid.uuid4()),
            'employee_id': emp['id'],
            'employee_name': name,
            'date': day,
            'schedule': row.get('schedule', ''),
            'time_in': time_in.strip(),
            'time_out': time_out.strip(),
            'remarks': row.get('remarks', ''),
        }))
    return report.require_any("No valid tardy records could be parsed.")


# ── Schedule grid ──────────────────────────────────────────────
@dataclass
class ScheduleImport:
    report: ImportReport
    shifts: List[dict] = field(default_factory=list)
    leave: List[dict] = field(default_factory=list)
    employee_order: List[str] = field(default_factory=list)
    overwritten_cells: List[tuple] = field(default_factory=list)
    month_key: str = ''


def _blocks(rows: List[Tuple[int, List[str]]]) -> List[List[Tuple[int, List[str]]]]:
    """Split ``(line_number, row)`` pairs into blocks at blank lines."""
    blocks, current = [], []
    for line, row in rows:
        if all(not (cell or '').strip() for cell in row):
            if current:
                blocks.append(current)
                current = []
        else:
            current.append((line, row))
    if current:
        blocks.append(current)
    return blocks


def _parse_cell(value: str, employee_id: str, day: date, leave_types: Dict[str, dict],
                shift_templates: List[dict]) -> Optional[dict]:
    """Turn one grid cell into ``{'shift': …}`` or ``{'leave': …}``; None if unrecognised."""
    upper = value.upper()
    base_shift = {'id': str(uuid.uuid4()), 'employee_id': employee_id, 'date': day,
                  'start_time': '', 'end_time': '', 'color': 'transparent', 'status': 'draft'}
    if upper == 'OFF':
        return {'shift': {**base_shift, 'label': 'OFF', 'is_day_off': True}}
    if upper == 'HOL-OFF':
        return {'shift': {**base_shift, 'label': 'HOL-OFF', 'is_holiday_off': True}}

    if '/' in value:
        times, _, code = (p.strip() for p in value.partition('/'))
        lt = leave_types.get(code.upper())
        m = _TIME_RANGE_RE.search(times)
        if m and lt:
            return {'leave': {
                'id': str(uuid.uuid4()), 'employee_id': employee_id, 'start_date': day, 'end_date': day,
                'type': lt['type'], 'is_all_day': False, 'status': 'approved', 'color': lt.get('color'),
                'start_time': convert_to_24_hour(m.group(1)), 'end_time': convert_to_24_hour(m.group(2)),
            }}

    lt = leave_types.get(upper)
    if lt:
        return {'leave': {
            'id': str(uuid.uuid4()), 'employee_id': employee_id, 'start_date': day, 'end_date': day,
            'type': lt['type'], 'is_all_day': True, 'status': 'approved', 'color': lt.get('color'),
        }}

    m = _TIME_RANGE_RE.search(value)
    if not m:
        return None
    start, end = convert_to_24_hour(m.group(1)), convert_to_24_hour(m.group(2))
    tpl = next((t for t in shift_templates if t.get('start_time') == start and t.get('end_time') == end), None)
    return {'shift': {
        **base_shift,
        'start_time': start,
        'end_time': end,
        'label': tpl['label'] if tpl else 'Shift',
        'color': tpl['color'] if tpl else DEFAULT_SHIFT_COLOR,
        'break_start_time': tpl.get('break_start_time') if tpl else None,
        'break_end_time': tpl.get('break_end_time') if tpl else None,
        'is_unpaid_break': bool(tpl.get('is_unpaid_break')) if tpl else False,
    }}


def parse_schedule(text: str, employees: List[dict], leave_types: Iterable[dict],
                   shift_templates: Iterable[dict]) -> ScheduleImport:
    """Parse the grid export: ``Employees,YYYY-MM-DD,…`` blocks separated by blank lines."""
    reader = csv.reader(io.StringIO(text))
    rows = [(reader.line_num, row) for row in reader]
    types = {lt['type'].upper(): lt for lt in leave_types}
    templates = list(shift_templates)
    result = ScheduleImport(report=ImportReport())
    blocks = _blocks(rows)
    if not blocks:
        raise ImportAbort("Could not find any schedule blocks in the file.")

    for block_no, block in enumerate(blocks, start=1):
        header = block[0][1]
        if not header or 'employee' not in (header[0] or '').strip().lower():
            _log.warning("Schedule block %d has no Employees header, skipped", block_no)
            continue
        dates = []
        for col, raw in enumerate(header[1:], start=1):
            day = parse_date((raw or '').strip())
            if day is not None:
                dates.append((col, day))
        if not dates:
            _log.warning("Schedule block %d has no valid date columns, skipped", block_no)
            continue
        if not result.month_key:
            result.month_key = dates[0][1].strftime('%Y-%m')

        for line, row in block[1:]:
            name = (row[0] if row else '').strip()
            if not name:
                continue
            emp = find_employee_by_name(name, employees)
            if emp is None:
                result.report.add(Skipped(line, f"employee '{name}' not found"))
                continue
            if emp['id'] not in result.employee_order:
                result.employee_order.append(emp['id'])
            for col, day in dates:
                value = (row[col] if col < len(row) else '').strip()
                result.overwritten_cells.append((emp['id'], day))
                if not value:
                    continue
                parsed = _parse_cell(value, emp['id'], day, types, templates)
                if parsed is None:
                    result.report.add(Skipped(line, f"unrecognised cell '{value}' for {name} on {day.isoformat()}"))
                elif 'shift' in parsed:
                    result.shifts.append(parsed['shift'])
                    result.report.add(Imported(line, parsed['shift']))
                else:
                    result.leave.append(parsed['leave'])
                    result.report.add(Imported(line, parsed['leave']))

    if not result.shifts and not result.leave:
        raise ImportAbort(
            "No valid shifts or leave could be parsed. Please check employee names, "
            "date headers (yyyy-mm-dd), and shift formats (e.g., 9am-5pm)."
        )
    return result


# ── CSV exports (re-importable) ────────────────────────────────
def export_holidays_csv(holidays: Iterable[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator='\r\n')
    writer.writerow(['Date', 'Title'])
    for h in holidays:
        day = parse_date(h.get('date'))
        writer.writerow([day.isoformat() if day else '', h.get('title', '')])
    return buf.getvalue()


def export_leave_types_csv(leave_types: Iterable[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator='\r\n')
    writer.writerow(['Type', 'Color'])
    for lt in leave_types:
        writer.writerow([lt.get('type', ''), lt.get('color', '')])
    return buf.getvalue()
