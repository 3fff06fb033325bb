"""CSV import router: holidays, leave types, members, allowances, tardy records, schedule grid."""
from fastapi import APIRouter, HTTPException, Query, Depends, UploadFile, File
from ondutylib.importers import (
    ImportAbort, decode_csv, parse_allowances, parse_holidays, parse_leave_types, parse_members,
    parse_schedule, parse_tardy,
)
from ..dependencies import get_db, require_manager, require_admin, _logger, _sanitize_500
from .events import broadcast

router = APIRouter()

MAX_CSV_BYTES = 5 * 1024 * 1024


async def _read_csv(file: UploadFile) -> str:
    content = await file.read()
    if len(content) > MAX_CSV_BYTES:
        raise HTTPException(status_code=413, detail="CSV file exceeds the 5 MiB limit.")
    if not content.strip():
        raise HTTPException(status_code=400, detail="CSV file is empty.")
    return decode_csv(content)


def _abort(e: ImportAbort, kind: str) -> HTTPException:
    _logger.warning("import %s aborted: %s", kind, e)
    return HTTPException(status_code=400, detail=str(e))


def _done(kind: str, user: dict, summary: dict) -> dict:
    _logger.info("AUDIT IMPORT_%s | user=%s imported=%d skipped=%d",
                 kind.upper(), user.get('email'), summary['imported'], summary['skipped'])
    return summary


@router.post("/api/import/holidays", tags=["Import"], summary="Import holidays from CSV", description="Required columns: `Date`, `Title`.")
async def import_holidays(file: UploadFile = File(...), cur_user: dict = Depends(require_manager)):
    text = await _read_csv(file)
    try:
        report = parse_holidays(text)
    except ImportAbort as e:
        raise _abort(e, 'holidays')
    db = get_db()
    for record in report.records:
        db.create_holiday(record)
    broadcast("schedule_changed", {"import": "holidays"})
    return _done('holidays', cur_user, report.summary())


@router.post("/api/import/leave-types", tags=["Import"], summary="Import leave types from CSV", description="Required columns: `Type`, `Color` (case-insensitive). Colour names map to hex; unknown colours become `#000000`.")
async def import_leave_types(file: UploadFile = File(...), cur_user: dict = Depends(require_manager)):
    text = await _read_csv(file)
    try:
        report = parse_leave_types(text)
    except ImportAbort as e:
        raise _abort(e, 'leave_types')
    get_db().upsert_leave_types(report.records)
    return _done('leave_types', cur_user, report.summary())


@router.post("/api/import/members", tags=["Import"], summary="Import team members from CSV", description=(
    "Required columns: `First Name`, `Last Name`, `Email`. Optional: `M.I.`, `Position`, `Birth Date`, "
    "`Start Date`, `Group`/`Department`, `Phone`, `Employee Number`, `Password`, `Role`. "
    "Rows whose email already exists are skipped. Requires Admin role."
))
async def import_members(file: UploadFile = File(...), cur_user: dict = Depends(require_admin)):
    text = await _read_csv(file)
    db = get_db()
    try:
        report = parse_members(text, [e['email'] for e in db.get_employees()])
    except ImportAbort as e:
        raise _abort(e, 'members')
    errors = list(report.errors)
    imported = 0
    for record in report.records:
        try:
            db.create_employee(record)
            imported += 1
        except ValueError as e:
            errors.append(f"{record['email']}: {e}")
            _logger.warning("member import rejected %s: %s", record['email'], e)
    if imported:
        broadcast("roster_changed", {"import": imported})
    summary = {**report.summary(imported), 'errors': errors, 'skipped': len(report.skipped) + len(report.records) - imported}
    return _done('members', cur_user, summary)


@router.post("/api/import/allowances", tags=["Import"], summary="Import allowance balances from CSV", description=(
    "Required columns: `Recipient`, `Load Allocation`, `Load Balance`; optional `Balance As Of`. "
    "Sets each employee's load allocation and records the current month's balance."
))
async def import_allowances(file: UploadFile = File(...), cur_user: dict = Depends(require_manager)):
    text = await _read_csv(file)
    db = get_db()
    try:
        report = parse_allowances(text, db.get_employees())
    except ImportAbort as e:
        raise _abort(e, 'allowances')
    for record in report.records:
        db.update_employee(record['employee_id'], {'load_allocation': record['load_allocation']})
        db.upsert_allowance(record['employee_id'], record['year'], record['month'], record['balance'],
                            record['as_of_date'])
    return _done('allowances', cur_user, report.summary())


@router.post("/api/import/tardy", tags=["Import"], summary="Import tardy records from CSV", description="Required columns: `EMPLOYEE`, `DATE`, `SCHEDULE`, `IN/OUT`, `REMARKS` (case-insensitive). `replace=true` clears earlier imports first.")
async def import_tardy(file: UploadFile = File(...), replace: bool = Query(False),
                       cur_user: dict = Depends(require_manager)):
    text = await _read_csv(file)
    db = get_db()
    try:
        report = parse_tardy(text, db.get_employees())
    except ImportAbort as e:
        raise _abort(e, 'tardy')
    if replace:
        db.clear_tardy_records()
    db.add_tardy_records(report.records)
    return _done('tardy', cur_user, report.summary())


@router.delete("/api/import/tardy", tags=["Import"], summary="Clear imported tardy records")
def clear_tardy(cur_user: dict = Depends(require_manager)):
    count = get_db().clear_tardy_records()
    _logger.warning("AUDIT TARDY_CLEAR | user=%s deleted=%d", cur_user.get('email'), count)
    return {"ok": True, "deleted": count}


@router.post("/api/import/schedule", tags=["Import"], summary="Import schedule grid from CSV", description=(
    "Blocks of `Employees,YYYY-MM-DD,...` separated by empty rows. Cell codes: `OFF`, `HOL-OFF`, a leave-type "
    "code (full-day approved leave), `time-time / TYPE` (partial leave) or `start-end` (shift, 12- or 24-hour). "
    "Every listed cell is overwritten, even when empty; the row order becomes the month's employee order."
))
async def import_schedule(file: UploadFile = File(...), cur_user: dict = Depends(require_manager)):
    text = await _read_csv(file)
    db = get_db()
    try:
        parsed = parse_schedule(text, db.get_employees(), db.get_leave_types(), db.get_shift_templates())
    except ImportAbort as e:
        raise _abort(e, 'schedule')
    try:
        counts = db.apply_schedule_import(parsed.overwritten_cells, parsed.shifts, parsed.leave,
                                          parsed.month_key, parsed.employee_order)
    except Exception as e:
        raise _sanitize_500(e, 'import_schedule')
    broadcast("schedule_changed", {"import": parsed.month_key})
    broadcast("leave_changed", {"import": parsed.month_key})
    summary = {**parsed.report.summary(), 'shifts': counts['shifts'], 'leave': counts['leave'],
               'month': parsed.month_key}
    return _done('schedule', cur_user, summary)
