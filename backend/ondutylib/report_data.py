"""
Report data generation: the employee x date matrix and per-report row builders.

Nothing here touches the database; callers pass the collections (as returned
by ``OnDutyDatabase``) and the interval explicitly.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from .names import full_name, surname_first
from .timeutil import (
    parse_date, iter_days, hours_between, net_shift_hours, to_minutes,
    us_short, us_padded, long_date,
)

_log = logging.getLogger('onduty')

WORK_EXTENSION = 'Work Extension'
TARDY = 'TARDY'
_WFH_LABELS = ('WFH', 'WORK FROM HOME')

REPORT_ROW_FIELDS = (
    'employee_name', 'date', 'day_status', 'schedule_start', 'schedule_end',
    'unpaidbreak_start', 'unpaidbreak_end', 'paidbreak_start', 'paidbreak_end',
)
WORK_SCHEDULE_HEADERS = [
    'Employee Name', 'Date', 'Day Status', 'Schedule Start', 'Schedule End',
    'Unpaid Break Start', 'Unpaid Break End', 'Paid Break Start', 'Paid Break End',
]
TARDY_HEADERS = ['Employee', 'Date', 'Schedule', 'In/Out', 'Remarks']
WFH_FIELDS = ('DATE', 'ATTENDANCE_RENDERED', 'TOTAL_HRS_SPENT', 'REMARKS')
WORK_EXTENSION_FIELDS = (
    'employee_name', 'work_sched_date', 'start_time', 'end_time', 'date_of_work_extended',
    'extended_start_time', 'extended_end_time', 'total_hours_extended', 'reason',
)
OVERTIME_FIELDS = (
    'SURNAME', 'EMPLOYEE NAME', 'TYPE', 'PERSONNEL NUMBER', 'TYPE CODE', 'START DATE',
    'END DATE', 'START TIME', 'END TIME', 'TOTAL HOURS', 'REASONS/REMARKS',
)
EMPLOYEE_CLASSIFICATIONS = ['Rank-and-File', 'Confidential', 'Managerial']


@dataclass
class OvertimeSettings:
    """Night window and payroll codes for the overtime / ND report."""
    nd_start: str = '20:00'
    nd_end: str = '06:00'
    classifications: List[str] = field(default_factory=lambda: ['Rank-and-File'])
    ot_type_code: str = '801'
    nd_type_code: str = '803'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'OvertimeSettings':
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)


class DayInfo(NamedTuple):
    status: str
    shift: Optional[dict]
    leave: Optional[dict]


def _blank_schedule() -> Dict[str, str]:
    return {
        'schedule_start': '', 'schedule_end': '',
        'unpaidbreak_start': '', 'unpaidbreak_end': '',
        'paidbreak_start': '', 'paidbreak_end': '',
    }


def schedule_fields(source: Optional[dict]) -> Dict[str, str]:
    """Copy start/end and the break (paid or unpaid) from a shift or shift template."""
    fields = _blank_schedule()
    if not source:
        return fields
    fields['schedule_start'] = source.get('start_time') or ''
    fields['schedule_end'] = source.get('end_time') or ''
    prefix = 'unpaidbreak' if source.get('is_unpaid_break') else 'paidbreak'
    fields[f'{prefix}_start'] = source.get('break_start_time') or ''
    fields[f'{prefix}_end'] = source.get('break_end_time') or ''
    return fields


def default_shift_template(employee: dict, shift_templates: Iterable[dict]) -> Optional[dict]:
    """Managers fall back to "Manager Shift", everyone else to "Mid Shift"."""
    wanted = 'manager shift' if employee.get('role') == 'manager' else 'mid shift'
    for tpl in shift_templates:
        if wanted in (tpl.get('name') or '').lower():
            return tpl
    return None


def _is_wfh(shift: dict) -> bool:
    return (shift.get('label') or '').strip().upper() in _WFH_LABELS


class ScheduleIndex:
    """Same-day lookups of shifts, leave and holidays keyed by (employee, date)."""

    def __init__(self, shifts: Iterable[dict], leave: Iterable[dict], holidays: Iterable[dict]):
        self.shifts: Dict[Tuple[str, date], List[dict]] = {}
        for s in shifts:
            day = parse_date(s.get('date'))
            if day is not None:
                self.shifts.setdefault((s.get('employee_id'), day), []).append(s)
        self.leave: Dict[Tuple[str, date], dict] = {}
        for entry in leave:
            start = parse_date(entry.get('start_date'))
            end = parse_date(entry.get('end_date')) or start
            if start is None:
                continue
            for day in iter_days(start, end):
                self.leave.setdefault((entry.get('employee_id'), day), entry)
        self.holidays: Dict[date, dict] = {}
        for h in holidays:
            day = parse_date(h.get('date'))
            if day is not None:
                self.holidays.setdefault(day, h)

    def day_off(self, employee_id: str, day: date) -> Optional[dict]:
        return next((s for s in self.shifts.get((employee_id, day), []) if s.get('is_day_off')), None)

    def holiday_off(self, employee_id: str, day: date) -> Optional[dict]:
        return next((s for s in self.shifts.get((employee_id, day), []) if s.get('is_holiday_off')), None)

    def regular_shift(self, employee_id: str, day: date) -> Optional[dict]:
        return next(
            (s for s in self.shifts.get((employee_id, day), [])
             if not s.get('is_day_off') and not s.get('is_holiday_off')),
            None,
        )

    def leave_on(self, employee_id: str, day: date) -> Optional[dict]:
        return self.leave.get((employee_id, day))

    def classify(self, employee_id: str, day: date) -> DayInfo:
        """First match wins: day-off, holiday-off/leave/holiday, regular shift, nothing."""
        if self.day_off(employee_id, day):
            return DayInfo('OFF', None, None)
        if self.holiday_off(employee_id, day):
            return DayInfo('HOL OFF', None, None)
        leave = self.leave_on(employee_id, day)
        if leave is not None:
            return DayInfo((leave.get('type') or '').upper(), None, leave)
        if day in self.holidays:
            return DayInfo('HOL OFF', None, None)
        shift = self.regular_shift(employee_id, day)
        if shift is not None:
            return DayInfo('WFH' if _is_wfh(shift) else 'SKE', shift, None)
        return DayInfo('', None, None)


# ── Regular work schedule ──────────────────────────────────────
def build_work_schedule_rows(employees: Iterable[dict], shifts: Iterable[dict], leave: Iterable[dict],
                             holidays: Iterable[dict], shift_templates: Iterable[dict],
                             start: date, end: date) -> List[Dict[str, str]]:
    """One ``ReportRow`` per (employee, day), ordered by employee name then date."""
    index = ScheduleIndex(shifts, leave, holidays)
    templates = list(shift_templates)
    rows = []
    for emp in employees:
        name = full_name(emp).upper()
        for day in iter_days(start, end):
            info = index.classify(emp['id'], day)
            status = info.status
            if status == 'OFF':
                fields = _blank_schedule()
            elif info.shift is not None:
                # working days carry their times only
                status = ''
                fields = schedule_fields(info.shift)
            elif info.status:
                fields = schedule_fields(default_shift_template(emp, templates))
            else:
                fields = _blank_schedule()
            row = {'employee_name': name, 'date': day, 'day_status': status}
            row.update(fields)
            rows.append(row)
    rows.sort(key=lambda r: (r['employee_name'], r['date']))
    for row in rows:
        row['date'] = us_short(row['date'])
    return [{k: row[k] for k in REPORT_ROW_FIELDS} for row in rows]


# ── Attendance sheet ───────────────────────────────────────────
def build_attendance_rows(employees: Iterable[dict], shifts: Iterable[dict], leave: Iterable[dict],
                          holidays: Iterable[dict], days: List[date]) -> List[dict]:
    index = ScheduleIndex(shifts, leave, holidays)
    rows = []
    for emp in employees:
        rows.append({
            'employee': surname_first(emp),
            'group': emp.get('group_name') or '',
            'position': emp.get('position') or '',
            'days': [index.classify(emp['id'], d).status for d in days],
        })
    return rows


def attendance_headers(days: List[date]) -> List[str]:
    return ['Employee Name', 'Group', 'Position'] + [d.strftime('%a, %b ') + str(d.day) for d in days]


# ── User summary ───────────────────────────────────────────────
def build_user_summary(employees: Iterable[dict], shifts: Iterable[dict], leave: Iterable[dict],
                       leave_types: Iterable[dict], start: date, end: date) -> Tuple[List[str], List[list]]:
    type_names = [lt['type'] for lt in leave_types]
    headers = ['Employee Name', 'Total Shifts', 'Total Hours'] + type_names
    shifts = list(shifts)
    leave = list(leave)
    rows = []
    for emp in employees:
        worked = [
            s for s in shifts
            if s.get('employee_id') == emp['id'] and not s.get('is_day_off') and not s.get('is_holiday_off')
            and s.get('date') is not None and start <= parse_date(s['date']) <= end
        ]
        total = sum(net_shift_hours(s) or 0 for s in worked)
        in_range = [
            entry for entry in leave
            if entry.get('employee_id') == emp['id'] and parse_date(entry.get('start_date'))
            and start <= parse_date(entry['start_date']) <= end
        ]
        counts = [sum(1 for entry in in_range if entry.get('type') == t) for t in type_names]
        rows.append([surname_first(emp), len(worked), f"{total:.2f}"] + counts)
    return headers, rows


# ── Cumulative tardy report ────────────────────────────────────
def build_tardy_rows(employees: Iterable[dict], shifts: Iterable[dict], leave: Iterable[dict],
                     tardy_records: Iterable[dict], start: date, end: date) -> List[list]:
    """Imported tardy records merged with TARDY leave; imported records win per (employee, date)."""
    by_id = {e['id']: e for e in employees}
    index = ScheduleIndex(shifts, [], [])
    combined = []
    seen = set()
    for rec in tardy_records:
        day = parse_date(rec.get('date'))
        if day is None or not start <= day <= end:
            continue
        seen.add((rec.get('employee_id'), day))
        combined.append({
            'employee_name': rec.get('employee_name') or full_name(by_id.get(rec.get('employee_id'))),
            'date': day,
            'schedule': rec.get('schedule') or '',
            'time_in': rec.get('time_in') or '',
            'time_out': rec.get('time_out') or '',
            'remarks': rec.get('remarks') or '',
        })
    for entry in leave:
        day = parse_date(entry.get('start_date'))
        if entry.get('type') != TARDY or day is None or not start <= day <= end:
            continue
        emp_id = entry.get('employee_id')
        if not emp_id or (emp_id, day) in seen:
            continue
        emp = by_id.get(emp_id)
        shift = next(iter(index.shifts.get((emp_id, day), [])), None)
        combined.append({
            'employee_name': full_name(emp) if emp else 'Unknown',
            'date': day,
            'schedule': f"{shift.get('start_time')}-{shift.get('end_time')}" if shift else 'N/A',
            'time_in': entry.get('start_time') or '',
            'time_out': entry.get('end_time') or '',
            'remarks': entry.get('reason') or 'Applied via App',
        })
    combined.sort(key=lambda r: (r['date'], r['employee_name']))
    return [
        [
            r['employee_name'],
            us_padded(r['date']),
            r['schedule'],
            f"{r['time_in']}-{r['time_out']}" if r['time_in'] and r['time_out'] else '',
            r['remarks'],
        ]
        for r in combined
    ]


# ── WFH certification ──────────────────────────────────────────
def build_wfh_rows(employee: dict, shifts: Iterable[dict], leave: Iterable[dict],
                   holidays: Iterable[dict], start: date, end: date) -> List[Dict[str, str]]:
    index = ScheduleIndex(shifts, leave, holidays)
    rows = []
    for day in iter_days(start, end):
        info = index.classify(employee['id'], day)
        if info.status in ('', 'OFF', 'HOL OFF'):
            continue
        if info.leave is not None:
            rendered, hours, remarks = 'ON LEAVE', '', (info.leave.get('type') or '').upper()
        else:
            rendered = 'WFH' if info.status == 'WFH' else 'OFFICE-BASED'
            net = net_shift_hours(info.shift)
            hours, remarks = ('' if net is None else f"{net:.2f}"), ''
        rows.append({
            'DATE': long_date(day),
            'ATTENDANCE_RENDERED': rendered,
            'TOTAL_HRS_SPENT': hours,
            'REMARKS': remarks,
        })
    return rows


# ── Work extension summary ─────────────────────────────────────
def build_work_extension_rows(employees: Iterable[dict], leave: Iterable[dict],
                              start: date, end: date) -> List[Dict[str, str]]:
    by_id = {e['id']: e for e in employees}
    picked = []
    for entry in leave:
        shift_day = parse_date(entry.get('original_shift_date'))
        if entry.get('type') != WORK_EXTENSION or shift_day is None or not start <= shift_day <= end:
            continue
        picked.append((shift_day, entry))
    picked.sort(key=lambda p: p[0])

    rows = []
    for shift_day, entry in picked:
        emp = by_id.get(entry.get('employee_id'))
        total = hours_between(entry.get('start_time'), entry.get('end_time'))
        extended = parse_date(entry.get('start_date'))
        rows.append({
            'employee_name': full_name(emp) if emp else 'Unknown',
            'work_sched_date': us_padded(shift_day),
            'start_time': entry.get('original_start_time') or '',
            'end_time': entry.get('original_end_time') or '',
            'date_of_work_extended': us_padded(extended) if extended else '',
            'extended_start_time': entry.get('start_time') or '',
            'extended_end_time': entry.get('end_time') or '',
            'total_hours_extended': '' if total is None else f"{total:.2f}",
            'reason': entry.get('reason') or '',
        })
    return rows


# ── Overtime and night differential ────────────────────────────
def _at(day: date, hhmm: str) -> Optional[datetime]:
    minutes = to_minutes(hhmm)
    if minutes is None:
        return None
    return datetime.combine(day, time(minutes // 60, minutes % 60))


def _overlap_minutes(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> float:
    start, end = max(a_start, b_start), min(a_end, b_end)
    return (end - start).total_seconds() / 60 if end > start else 0.0


def night_minutes(shift_start: datetime, shift_end: datetime, day: date, settings: OvertimeSettings) -> float:
    """Minutes of a shift inside [day nd_start, midnight) and [next day 00:00, nd_end)."""
    next_day = day + timedelta(days=1)
    nd_start = _at(day, settings.nd_start)
    nd_end = _at(next_day, settings.nd_end)
    midnight = datetime.combine(next_day, time(0, 0))
    total = 0.0
    if nd_start is not None:
        total += _overlap_minutes(shift_start, shift_end, nd_start, midnight)
    if nd_end is not None:
        total += _overlap_minutes(shift_start, shift_end, midnight, nd_end)
    return total


def _ot_row(emp: dict, kind: str, code: str, start: datetime, end: datetime, minutes: float, reason: str) -> dict:
    return {
        'SURNAME': (emp.get('last_name') or '').upper(),
        'EMPLOYEE NAME': surname_first(emp),
        'TYPE': kind,
        'PERSONNEL NUMBER': emp.get('personnel_number') or '',
        'TYPE CODE': code,
        'START DATE': start.strftime('%Y-%m-%d'),
        'END DATE': end.strftime('%Y-%m-%d'),
        'START TIME': start.strftime('%H:%M'),
        'END TIME': end.strftime('%H:%M'),
        'TOTAL HOURS': f"{minutes / 60:.2f}",
        'REASONS/REMARKS': reason,
    }


def build_overtime_rows(employees: Iterable[dict], shifts: Iterable[dict], leave: Iterable[dict],
                        start: date, end: date, settings: OvertimeSettings) -> List[dict]:
    """OT rows from work extensions and ND rows from night-window overlap, per eligible employee."""
    index = ScheduleIndex(shifts, [], [])
    leave = list(leave)
    rows = []
    for emp in employees:
        if (emp.get('employee_classification') or '') not in settings.classifications:
            continue
        for day in iter_days(start, end):
            for ext in leave:
                if (ext.get('employee_id') != emp['id'] or ext.get('type') != WORK_EXTENSION
                        or parse_date(ext.get('start_date')) != day):
                    continue
                ot_start, ot_end = _at(day, ext.get('start_time')), _at(day, ext.get('end_time'))
                if ot_start is None or ot_end is None:
                    continue
                if ot_end < ot_start:
                    ot_end += timedelta(days=1)
                minutes = (ot_end - ot_start).total_seconds() / 60
                if minutes > 0:
                    rows.append(_ot_row(emp, 'OT', settings.ot_type_code, ot_start, ot_end, minutes,
                                        ext.get('reason') or ''))

            shift = index.regular_shift(emp['id'], day)
            if shift is None:
                continue
            s_start, s_end = _at(day, shift.get('start_time')), _at(day, shift.get('end_time'))
            if s_start is None or s_end is None:
                continue
            if s_end <= s_start:
                s_end += timedelta(days=1)
            minutes = night_minutes(s_start, s_end, day, settings)
            if minutes > 0:
                rows.append(_ot_row(emp, 'ND', settings.nd_type_code, s_start, s_end, minutes, ''))
    _log.debug("overtime rows built: %d", len(rows))
    return rows
