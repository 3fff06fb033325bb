"""Reports router: templates, previews, downloads, email and CSV exports."""
import smtplib
from datetime import date
from urllib.parse import quote
from fastapi import APIRouter, HTTPException, Query, Depends, Request, UploadFile, File
from fastapi.responses import Response as _Response
from pydantic import BaseModel, Field
from typing import Optional, List
from ondutylib.database import TEMPLATE_KEYS
from ondutylib.importers import export_holidays_csv, export_leave_types_csv
from ondutylib.mailer import SmtpNotConfigured, send_report
from ondutylib.report_builders import (
    REPORT_TYPES, TEMPLATE_FOR, ReportRequest, build_report, preview, resolve_range,
)
from ondutylib.report_data import OvertimeSettings
from ondutylib.template_engine import MAX_TEMPLATE_BYTES, TemplateError, load_template
from ..dependencies import (
    get_db, require_auth, require_manager, is_manager, _sanitize_500, _logger, limiter,
    raise_for_value_error,
)

router = APIRouter()

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
# Reports any member may run for themselves.
_SELF_SERVICE = ('wfh',)


def _disposition(filename: str) -> str:
    fallback = filename.encode('ascii', 'replace').decode('ascii').replace('"', "'")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def _xlsx_response(content: bytes, filename: str) -> _Response:
    return _Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": _disposition(filename)},
    )


def _csv_response(text: str, filename: str) -> _Response:
    return _Response(
        content=text.encode('utf-8-sig'),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": _disposition(filename)},
    )


def _check_kind(kind: str, user: dict) -> None:
    if kind not in REPORT_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown report '{kind}'")
    if kind not in _SELF_SERVICE and not is_manager(user):
        raise HTTPException(status_code=403, detail="Role 'manager' required")


def _report_request(db, kind: str, start: date, end: Optional[date], group: Optional[str],
                    employee_id: Optional[str], user: dict) -> ReportRequest:
    """Resolve the range and the subject employee (the caller unless a manager names one)."""
    subject_id = employee_id if (employee_id and is_manager(user)) else user['id']
    subject = db.get_employee(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail=f"Employee '{subject_id}' not found")
    start, end = resolve_range(kind, start, end)
    settings = OvertimeSettings.from_dict(db.get_json('overtimeSettings'))
    return ReportRequest(start=start, end=end, group=group, user=subject, settings=settings)


def _generate(kind: str, start: date, end: Optional[date], group: Optional[str],
              employee_id: Optional[str], user: dict):
    db = get_db()
    req = _report_request(db, kind, start, end, group, employee_id, user)
    templates = {TEMPLATE_FOR[kind]: db.get_template(TEMPLATE_FOR[kind])} if kind in TEMPLATE_FOR else {}
    try:
        return build_report(kind, db.fetch_all(), req, templates)
    except TemplateError as e:
        _logger.warning("report %s failed: %s", kind, e)
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise raise_for_value_error(e)
    except Exception as e:
        raise _sanitize_500(e, f'report/{kind}')


# ── Report templates ─────────────────────────────────────────

def _check_template_key(key: str) -> None:
    if key not in TEMPLATE_KEYS:
        raise HTTPException(status_code=404, detail=f"Unknown template '{key}'")


@router.get("/api/templates", tags=["Reports"], summary="Template status", description="Which report templates have been uploaded.")
def list_templates(_user: dict = Depends(require_auth)):
    return get_db().list_templates()


@router.put("/api/templates/{key}", tags=["Reports"], summary="Upload report template", description="Upload an `.xlsx` template (max 5 MiB). The workbook is validated before it is stored.")
async def upload_template(key: str, file: UploadFile = File(...), cur_user: dict = Depends(require_manager)):
    _check_template_key(key)
    content = await file.read()
    if len(content) > MAX_TEMPLATE_BYTES:
        raise HTTPException(status_code=413, detail="Template exceeds the 5 MiB limit.")
    try:
        load_template(content)
    except TemplateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    get_db().set_template(key, content)
    _logger.warning("AUDIT TEMPLATE_UPLOAD | user=%s key=%s file=%s bytes=%d",
                    cur_user.get('email'), key, file.filename, len(content))
    return {"ok": True, "key": key, "size": len(content)}


@router.get("/api/templates/{key}", tags=["Reports"], summary="Download report template")
def download_template(key: str, _cur_user: dict = Depends(require_manager)):
    _check_template_key(key)
    content = get_db().get_template(key)
    if content is None:
        raise HTTPException(status_code=404, detail=f"Template '{key}' has not been uploaded")
    return _xlsx_response(content, f"{key}.xlsx")


@router.delete("/api/templates/{key}", tags=["Reports"], summary="Remove report template")
def delete_template(key: str, cur_user: dict = Depends(require_manager)):
    _check_template_key(key)
    count = get_db().delete_template(key)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Template '{key}' has not been uploaded")
    _logger.warning("AUDIT TEMPLATE_DELETE | user=%s key=%s", cur_user.get('email'), key)
    return {"ok": True, "deleted": count}


# ── Reports ──────────────────────────────────────────────────

@router.get("/api/reports", tags=["Reports"], summary="List report types")
def list_reports(_user: dict = Depends(require_auth)):
    uploaded = get_db().list_templates()
    return [
        {"type": kind, "template": TEMPLATE_FOR.get(kind), "ready": uploaded.get(TEMPLATE_FOR[kind], False) if kind in TEMPLATE_FOR else True}
        for kind in REPORT_TYPES
    ]


@router.get(
    "/api/reports/{kind}/preview",
    tags=["Reports"],
    summary="Preview report rows",
    description=(
        "Return `{title, headers, rows}` for a report without building a workbook.\n\n"
        "Attendance and work-extension reports cover the Monday..Sunday week of `start`; "
        "the WFH certificate covers the month of `start`."
    ),
)
def preview_report(
    kind: str,
    start: date = Query(...),
    end: Optional[date] = Query(None),
    group: Optional[str] = Query(None),
    employee_id: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    _check_kind(kind, user)
    db = get_db()
    req = _report_request(db, kind, start, end, group, employee_id, user)
    try:
        return preview(kind, db.fetch_all(), req)
    except ValueError as e:
        raise raise_for_value_error(e)


@router.get("/api/reports/{kind}/download", tags=["Reports"], summary="Download report", description="Generate the report workbook. Template-driven reports fail with 400 until their template is uploaded.")
def download_report(
    kind: str,
    start: date = Query(...),
    end: Optional[date] = Query(None),
    group: Optional[str] = Query(None),
    employee_id: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    _check_kind(kind, user)
    report = _generate(kind, start, end, group, employee_id, user)
    return _xlsx_response(report.content, report.filename)


class EmailReportBody(BaseModel):
    start: date
    end: Optional[date] = None
    group: Optional[str] = None
    employee_id: Optional[str] = None
    recipients: List[str] = Field(..., min_length=1)
    subject: Optional[str] = None
    body: str = ''


@router.post("/api/reports/{kind}/email", tags=["Reports"], summary="Email report", description="Generate a report and send it as an attachment using the stored SMTP settings.")
@limiter.limit("10/minute")
def email_report(request: Request, kind: str, body: EmailReportBody, user: dict = Depends(require_auth)):
    _check_kind(kind, user)
    settings = get_db().get_smtp_settings()
    report = _generate(kind, body.start, body.end, body.group, body.employee_id, user)
    subject = body.subject or report.filename.rsplit('.', 1)[0]
    try:
        send_report(settings, body.recipients, subject, body.body or f"Please find attached: {report.filename}",
                    report.filename, report.content)
    except SmtpNotConfigured as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise raise_for_value_error(e)
    except (smtplib.SMTPException, OSError) as e:
        _logger.error("report mail failed: %s %s", type(e).__name__, e)
        raise HTTPException(status_code=502, detail=f"Failed to send email: {e}")
    _logger.info("AUDIT REPORT_EMAIL | user=%s report=%s recipients=%d", user.get('email'), kind, len(body.recipients))
    return {"ok": True, "filename": report.filename, "recipients": body.recipients}


# ── CSV exports ──────────────────────────────────────────────

@router.get("/api/export/holidays", tags=["Export"], summary="Export holidays as CSV", description="Columns `Date`, `Title`; re-imports through `POST /api/import/holidays`.")
def export_holidays(year: Optional[int] = Query(None), _user: dict = Depends(require_auth)):
    text = export_holidays_csv(get_db().get_holidays(year))
    return _csv_response(text, f"holidays{'_' + str(year) if year else ''}.csv")


@router.get("/api/export/leave-types", tags=["Export"], summary="Export leave types as CSV", description="Columns `Type`, `Color`; re-imports through `POST /api/import/leave-types`.")
def export_leave_types(_user: dict = Depends(require_auth)):
    return _csv_response(export_leave_types_csv(get_db().get_leave_types()), "leave_types.csv")
