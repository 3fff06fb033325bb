"""One-page leave application form rendered with fpdf2."""
from datetime import datetime
from typing import Optional

from fpdf import FPDF

from .names import full_name
from .timeutil import parse_date, long_date


class LeaveForm(FPDF):
    def header(self):
        self.set_fill_color(30, 41, 59)
        self.rect(10, 8, self.w - 20, 16, 'F')
        self.set_font("Helvetica", "B", 14)
        self.set_text_color(255, 255, 255)
        self.set_xy(10, 11)
        self.cell(self.w - 20, 10, "APPLICATION FOR LEAVE", align="C")
        self.set_text_color(30, 41, 59)
        self.ln(20)

    def footer(self):
        self.set_y(-12)
        self.set_font("Helvetica", "I", 7)
        self.set_text_color(120, 120, 120)
        self.cell(0, 5, f"OnDuty  |  generated {datetime.now().strftime('%m/%d/%Y %H:%M')}", align="C")

    def field_row(self, label: str, value: str):
        self.set_font("Helvetica", "B", 9)
        self.set_fill_color(241, 245, 249)
        self.cell(55, 8, label, border=1, fill=True)
        self.set_font("Helvetica", "", 9)
        self.cell(0, 8, value, border=1, new_x="LMARGIN", new_y="NEXT")

    def section(self, title: str):
        self.ln(3)
        self.set_font("Helvetica", "B", 10)
        self.cell(0, 7, title, new_x="LMARGIN", new_y="NEXT")


def _fmt_day(value) -> str:
    day = parse_date(value)
    return long_date(day) if day else ''


def _latin1(text: Optional[str]) -> str:
    # core fonts are latin-1 only
    return (text or '').encode('latin-1', 'replace').decode('latin-1')


def render_leave_pdf(entry: dict, employee: dict, approver: Optional[dict] = None) -> bytes:
    pdf = LeaveForm(orientation="P", unit="mm", format="A4")
    pdf.set_auto_page_break(auto=True, margin=18)
    pdf.add_page()

    pdf.section("Employee")
    pdf.field_row("Name", _latin1(full_name(employee)))
    pdf.field_row("Employee No.", _latin1(employee.get('employee_number') or entry.get('id_number')))
    pdf.field_row("Position", _latin1(employee.get('position')))
    pdf.field_row("Department", _latin1(entry.get('department') or employee.get('group_name')))
    pdf.field_row("Contact", _latin1(entry.get('contact_info') or employee.get('phone')))

    pdf.section("Leave details")
    pdf.field_row("Type", _latin1(entry.get('type')))
    pdf.field_row("Date filed", _fmt_day(entry.get('date_filed') or entry.get('requested_at')))
    pdf.field_row("From", _fmt_day(entry.get('start_date')))
    pdf.field_row("To", _fmt_day(entry.get('end_date') or entry.get('start_date')))
    if not entry.get('is_all_day', True):
        pdf.field_row("Hours", f"{entry.get('start_time') or ''} - {entry.get('end_time') or ''}")
    pdf.field_row("Reason", _latin1(entry.get('reason')))

    pdf.section("Action")
    pdf.field_row("Status", (entry.get('status') or '').upper())
    pdf.field_row("Approved / rejected by", _latin1(full_name(approver) if approver else ''))
    pdf.field_row("Date", _fmt_day(entry.get('managed_at')))

    pdf.ln(18)
    pdf.set_font("Helvetica", "", 9)
    half = (pdf.w - 20) / 2
    y = pdf.get_y()
    pdf.line(15, y, 10 + half - 5, y)
    pdf.line(10 + half + 5, y, pdf.w - 15, y)
    pdf.cell(half, 5, "Signature of applicant", align="C")
    pdf.cell(half, 5, "Signature of approver", align="C")
    return bytes(pdf.output())
