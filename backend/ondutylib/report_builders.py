"""
Concrete report types: data rows -> template workbook (or plain workbook) + file name.
"""
import logging
from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from . import report_data as rd
from .names import full_name
from .template_engine import (
    TemplateError, render_row_template, render_indexed_template,
)
from .timeutil import iter_days, week_bounds, month_bounds, us_padded, long_date

_log = logging.getLogger('onduty')

REPORT_TYPES = ('work-schedule', 'attendance', 'user-summary', 'tardy', 'wfh', 'work-extension', 'overtime')

# report type -> key of its uploaded template
TEMPLATE_FOR = {
    'work-schedule': 'workScheduleTemplate',
    'attendance': 'attendanceSheetTemplate',
    'wfh': 'wfhCertificationTemplate',
    'work-extension': 'workExtensionTemplate',
    'overtime': 'overtimeTemplate',
}
_TEMPLATE_LABELS = {
    'workScheduleTemplate': 'work schedule',
    'attendanceSheetTemplate': 'attendance sheet',
    'wfhCertificationTemplate': 'WFH certification',
    'workExtensionTemplate': 'work extension',
    'overtimeTemplate': 'overtime/ND',
}


@dataclass
class ReportRequest:
    """What to report on. ``user`` is the requesting employee (WFH, overtime globals)."""
    start: date
    end: date
    group: Optional[str] = None
    user: Optional[dict] = None
    settings: Optional[rd.OvertimeSettings] = None


@dataclass
class GeneratedReport:
    filename: str
    content: bytes
    media_type: str = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def resolve_range(kind: str, start: date, end: Optional[date] = None) -> Tuple[date, date]:
    """Weekly reports snap to Monday..Sunday and the WFH certificate to its month."""
    if kind in ('attendance', 'work-extension'):
        return week_bounds(start)
    if kind == 'wfh':
        return month_bounds(start)
    return start, end or start


def _group_employees(data: dict, group: Optional[str]) -> List[dict]:
    employees = data.get('employees', [])
    if group:
        employees = [e for e in employees if e.get('group_name') == group]
    return sorted(employees, key=lambda e: ((e.get('last_name') or '').lower(), (e.get('first_name') or '').lower()))


def _span(req: ReportRequest) -> str:
    return f"{req.start.isoformat()} to {req.end.isoformat()}"


def _require_template(templates: Dict[str, Optional[bytes]], kind: str) -> bytes:
    key = TEMPLATE_FOR[kind]
    content = templates.get(key)
    if not content:
        raise TemplateError(f"Please upload a {_TEMPLATE_LABELS[key]} template first.")
    return content


def _plain_workbook(title: str, headers: List[str], rows: List[list], widths: Dict[str, int],
                    default_width: int, header_font: Font, header_fill: Optional[PatternFill] = None) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title
    ws.append(headers)
    for row in rows:
        ws.append(row)
    for col, header in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col)
        cell.font = header_font
        if header_fill is not None:
            cell.fill = header_fill
        ws.column_dimensions[get_column_letter(col)].width = widths.get(header, default_width)
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ── Previews ({title, headers, rows}) ──────────────────────────
def preview(kind: str, data: dict, req: ReportRequest) -> dict:
    employees = _group_employees(data, req.group)
    if kind == 'work-schedule':
        rows = rd.build_work_schedule_rows(employees, data['shifts'], data['leave'], data['holidays'],
                                           data['shift_templates'], req.start, req.end)
        return {'title': f"Regular Work Schedule ({_span(req)})",
                'headers': rd.WORK_SCHEDULE_HEADERS,
                'rows': [[r[f] for f in rd.REPORT_ROW_FIELDS] for r in rows]}
    if kind == 'attendance':
        days = list(iter_days(req.start, req.end))
        rows = rd.build_attendance_rows(employees, data['shifts'], data['leave'], data['holidays'], days)
        return {'title': f"Attendance Sheet ({_span(req)})",
                'headers': rd.attendance_headers(days),
                'rows': [[r['employee'], r['group'], r['position']] + r['days'] for r in rows]}
    if kind == 'user-summary':
        headers, rows = rd.build_user_summary(employees, data['shifts'], data['leave'], data['leave_types'],
                                              req.start, req.end)
        return {'title': f"User Summary ({_span(req)})", 'headers': headers, 'rows': rows}
    if kind == 'tardy':
        rows = rd.build_tardy_rows(data['employees'], data['shifts'], data['leave'], data['tardy_records'],
                                   req.start, req.end)
        return {'title': f"Cumulative Tardy Report ({_span(req)})", 'headers': rd.TARDY_HEADERS, 'rows': rows}
    if kind == 'wfh':
        rows = rd.build_wfh_rows(req.user or {}, data['shifts'], data['leave'], data['holidays'], req.start, req.end)
        return {'title': f"WFH Certification ({req.start.strftime('%B %Y')})",
                'headers': list(rd.WFH_FIELDS),
                'rows': [[r[f] for f in rd.WFH_FIELDS] for r in rows]}
    if kind == 'work-extension':
        rows = rd.build_work_extension_rows(data['employees'], data['leave'], req.start, req.end)
        return {'title': f"Work Extension Summary ({_span(req)})",
                'headers': list(rd.WORK_EXTENSION_FIELDS),
                'rows': [[r[f] for f in rd.WORK_EXTENSION_FIELDS] for r in rows]}
    if kind == 'overtime':
        rows = rd.build_overtime_rows(data['employees'], data['shifts'], data['leave'], req.start, req.end,
                                      req.settings or rd.OvertimeSettings())
        return {'title': f"Overtime & Night Differential ({_span(req)})",
                'headers': list(rd.OVERTIME_FIELDS),
                'rows': [[r[f] for f in rd.OVERTIME_FIELDS] for r in rows]}
    raise ValueError(f"NOT_FOUND:REPORT:{kind}")


# ── Workbooks ──────────────────────────────────────────────────
def _work_schedule(data, req, templates) -> GeneratedReport:
    employees = _group_employees(data, req.group)
    rows = rd.build_work_schedule_rows(employees, data['shifts'], data['leave'], data['holidays'],
                                       data['shift_templates'], req.start, req.end)
    content = render_row_template(
        _require_template(templates, 'work-schedule'), 'employee_name', rows,
        global_tokens={'start_date': us_padded(req.start), 'end_date': us_padded(req.end)},
    )
    return GeneratedReport(f"Regular Work Schedule - {_span(req)}.xlsx", content)


def _attendance(data, req, templates) -> GeneratedReport:
    employees = _group_employees(data, req.group)
    days = list(iter_days(req.start, req.end))
    rows = rd.build_attendance_rows(employees, data['shifts'], data['leave'], data['holidays'], days)
    global_tokens = {'month': req.start.strftime('%B').upper(), 'group': req.group or ''}
    for i, day in enumerate(days[:7], start=1):
        global_tokens[f'day_{i}'] = str(day.day)
    content = render_indexed_template(_require_template(templates, 'attendance'), global_tokens, rows)
    return GeneratedReport(f"{req.group or 'All'} Attendance Sheet - {_span(req)}.xlsx", content)


def _user_summary(data, req, templates) -> GeneratedReport:
    employees = _group_employees(data, req.group)
    headers, rows = rd.build_user_summary(employees, data['shifts'], data['leave'], data['leave_types'],
                                          req.start, req.end)
    content = _plain_workbook('User Summary', headers, rows, {'Employee Name': 30}, 15, Font(bold=True))
    return GeneratedReport(f"User Summary - {_span(req)}.xlsx", content)


def _tardy(data, req, templates) -> GeneratedReport:
    rows = rd.build_tardy_rows(data['employees'], data['shifts'], data['leave'], data['tardy_records'],
                               req.start, req.end)
    content = _plain_workbook(
        'Cumulative Tardy Report', rd.TARDY_HEADERS, rows, {'Employee': 30, 'Remarks': 40}, 20,
        Font(bold=True, color='FFFFFFFF'), PatternFill(fill_type='solid', fgColor='FF000000'),
    )
    return GeneratedReport(f"Cumulative Tardy Report - {_span(req)}.xlsx", content)


def _manager_name(data: dict, user: dict) -> str:
    manager = next((e for e in data['employees'] if e['id'] == user.get('reports_to')), None)
    return full_name(manager) if manager else 'N/A'


def _wfh(data, req, templates) -> GeneratedReport:
    user = req.user or {}
    rows = rd.build_wfh_rows(user, data['shifts'], data['leave'], data['holidays'], req.start, req.end)
    global_tokens = {
        'first_day_of_month': long_date(req.start),
        'last_day_of_month': long_date(req.end),
        'employee_name': full_name(user),
        'reports_to_manager': _manager_name(data, user),
    }
    content = render_row_template(
        _require_template(templates, 'wfh'), 'DATE', rows, global_tokens=global_tokens,
        signature=user.get('signature'), with_signature=True,
    )
    mi = f" {user['middle_initial']}" if user.get('middle_initial') else ''
    filename = f"{user.get('last_name', '')}, {user.get('first_name', '')}{mi}_{req.start.strftime('%B')}.xlsx"
    return GeneratedReport(filename, content)


def _work_extension(data, req, templates) -> GeneratedReport:
    rows = rd.build_work_extension_rows(data['employees'], data['leave'], req.start, req.end)
    content = render_row_template(_require_template(templates, 'work-extension'), 'employee_name', rows)
    return GeneratedReport(f"Work Extension Summary - {_span(req)}.xlsx", content)


def _overtime(data, req, templates) -> GeneratedReport:
    user = req.user or {}
    rows = rd.build_overtime_rows(data['employees'], data['shifts'], data['leave'], req.start, req.end,
                                  req.settings or rd.OvertimeSettings())
    global_tokens = {
        'employee_name': full_name(user),
        'group': user.get('group_name') or '',
        'current_date': us_padded(date.today()),
    }
    content = render_row_template(
        _require_template(templates, 'overtime'), 'SURNAME', rows, global_tokens=global_tokens,
        signature=user.get('signature'), with_signature=True,
    )
    return GeneratedReport(f"Overtime and ND Report - {_span(req)}.xlsx", content)


_BUILDERS: Dict[str, Callable[[dict, ReportRequest, Dict[str, Optional[bytes]]], GeneratedReport]] = {
    'work-schedule': _work_schedule,
    'attendance': _attendance,
    'user-summary': _user_summary,
    'tardy': _tardy,
    'wfh': _wfh,
    'work-extension': _work_extension,
    'overtime': _overtime,
}


def build_report(kind: str, data: dict, req: ReportRequest,
                 templates: Dict[str, Optional[bytes]]) -> GeneratedReport:
    """Generate one report workbook. Raises ``TemplateError`` for missing/broken templates."""
    builder = _BUILDERS.get(kind)
    if builder is None:
        raise ValueError(f"NOT_FOUND:REPORT:{kind}")
    report = builder(data, req, templates)
    _log.info("report generated: %s (%d bytes)", report.filename, len(report.content))
    return report


