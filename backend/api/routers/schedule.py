"""Schedule router: shifts, publishing, shift templates, employee order, full state."""
import datetime as _dt
from datetime import date
from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from ondutylib.report_data import OvertimeSettings, EMPLOYEE_CLASSIFICATIONS
from ondutylib.timeutil import month_bounds, to_minutes
from ..dependencies import (
    get_db, require_admin, require_manager, require_auth, is_manager,
    _sanitize_500, _logger, raise_for_value_error, invalidate_sessions_for_user,
)
from .events import broadcast

router = APIRouter()

_OVERTIME_KEY = 'overtimeSettings'
_HHMM = r'^\d{2}:\d{2}$'


def _check_month(year: int, month: int) -> None:
    if not (1 <= month <= 12):
        raise HTTPException(status_code=400, detail="Invalid month: must be between 1 and 12")
    if not (2000 <= year <= 2100):
        raise HTTPException(status_code=400, detail="Invalid year: must be between 2000 and 2100")


def _ordered_employees(employees: List[dict], order: List[str]) -> List[dict]:
    """Apply a saved monthly order; employees not in it follow alphabetically."""
    rank = {emp_id: i for i, emp_id in enumerate(order)}
    return sorted(employees, key=lambda e: (rank.get(e['id'], len(rank)), (e.get('last_name') or '').lower(),
                                            (e.get('first_name') or '').lower()))


@router.get("/api/schedule", tags=["Schedule"], summary="Get monthly schedule", description="Return the schedule grid for a given year/month: employees in their saved order, shifts, leave, holidays and notes. Members only see published shifts.")
def get_schedule(
    year: int = Query(..., description="Year"),
    month: int = Query(..., description="Month (1-12)"),
    group: Optional[str] = Query(None, description="Filter by group name"),
    user: dict = Depends(require_auth),
):
    _check_month(year, month)
    db = get_db()
    start, end = month_bounds(date(year, month, 1))
    month_key = f"{year:04d}-{month:02d}"
    employees = db.get_employees(group=group)
    ids = {e['id'] for e in employees}
    shifts = db.get_shifts(start, end, group=group)
    if not is_manager(user):
        shifts = [s for s in shifts if s.get('status') == 'published']
    leave = [
        l for l in db.get_leave()
        if l['employee_id'] in ids and l.get('status') != 'rejected'
        and l['start_date'] <= end and (l.get('end_date') or l['start_date']) >= start
    ]
    return {
        "month": month_key,
        "employees": _ordered_employees(employees, db.get_employee_order(month_key)),
        "shifts": shifts,
        "leave": leave,
        "holidays": [h for h in db.get_holidays(year) if start <= h['date'] <= end],
        "notes": db.get_notes(start, end),
    }


@router.get("/api/shifts", tags=["Schedule"], summary="List shifts", description="Shifts in a date range, optionally for one employee or group.")
def get_shifts(
    start: date = Query(...),
    end: date = Query(...),
    employee_id: Optional[str] = Query(None),
    group: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    if end < start:
        return []
    shifts = get_db().get_shifts(start, end, employee_id=employee_id, group=group)
    if not is_manager(user):
        shifts = [s for s in shifts if s.get('status') == 'published']
    return shifts


# ── Write: Shifts ────────────────────────────────────────────

class ShiftBody(BaseModel):
    employee_id: str
    date: _dt.date
    label: str = ''
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    color: Optional[str] = None
    is_day_off: bool = False
    is_holiday_off: bool = False
    status: str = 'draft'
    break_start_time: Optional[str] = Field(None, pattern=_HHMM)
    break_end_time: Optional[str] = Field(None, pattern=_HHMM)
    is_unpaid_break: bool = True

    @field_validator('status')
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in ('draft', 'published'):
            raise ValueError("status must be draft or published")
        return v


class ShiftUpdate(BaseModel):
    employee_id: Optional[str] = None
    date: Optional[_dt.date] = None
    label: Optional[str] = None
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    color: Optional[str] = None
    is_day_off: Optional[bool] = None
    is_holiday_off: Optional[bool] = None
    status: Optional[str] = None
    break_start_time: Optional[str] = Field(None, pattern=_HHMM)
    break_end_time: Optional[str] = Field(None, pattern=_HHMM)
    is_unpaid_break: Optional[bool] = None


def _check_times(data: dict) -> None:
    for key in ('start_time', 'end_time', 'break_start_time', 'break_end_time'):
        if data.get(key) and to_minutes(data[key]) is None:
            raise HTTPException(status_code=400, detail=f"Field '{key}' must be a valid time (HH:MM)")


@router.post("/api/shifts", tags=["Schedule"], summary="Create shift", description="Add a shift (or day-off / holiday-off marker) to the schedule. Requires Manager role.")
def create_shift(body: ShiftBody, _cur_user: dict = Depends(require_manager)):
    data = body.model_dump()
    _check_times(data)
    if not (data['is_day_off'] or data['is_holiday_off']) and not (data['start_time'] and data['end_time']):
        raise HTTPException(status_code=400, detail="A working shift needs start_time and end_time")
    db = get_db()
    if db.get_employee(body.employee_id) is None:
        raise HTTPException(status_code=404, detail=f"Employee '{body.employee_id}' not found")
    try:
        result = db.create_shift(data)
        broadcast("schedule_changed", {"date": body.date.isoformat(), "employee_id": body.employee_id})
        return {"ok": True, "record": result}
    except Exception as e:
        raise _sanitize_500(e, 'create_shift')


@router.put("/api/shifts/{shift_id}", tags=["Schedule"], summary="Update shift")
def update_shift(shift_id: str, body: ShiftUpdate, _cur_user: dict = Depends(require_manager)):
    data = body.model_dump(exclude_unset=True)
    _check_times(data)
    if 'status' in data and data['status'] not in ('draft', 'published'):
        raise HTTPException(status_code=400, detail="status must be draft or published")
    try:
        result = get_db().update_shift(shift_id, data)
        broadcast("schedule_changed", {"id": shift_id})
        return {"ok": True, "record": result}
    except ValueError as e:
        raise raise_for_value_error(e)


@router.delete("/api/shifts/{shift_id}", tags=["Schedule"], summary="Delete shift")
def delete_shift(shift_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_shift(shift_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Shift '{shift_id}' not found")
    broadcast("schedule_changed", {"id": shift_id})
    return {"ok": True, "deleted": count}


@router.delete("/api/schedule/cell/{employee_id}/{day}", tags=["Schedule"], summary="Clear schedule cell", description="Remove every shift of one employee on one day.")
def delete_cell(employee_id: str, day: date, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_cell(employee_id, day)
    broadcast("schedule_changed", {"date": day.isoformat(), "employee_id": employee_id})
    return {"ok": True, "deleted": count}


class PublishBody(BaseModel):
    year: int
    month: int
    group: Optional[str] = None


@router.post("/api/schedule/publish", tags=["Schedule"], summary="Publish month", description="Switch every draft shift of the month (optionally one group) to published.")
def publish_month(body: PublishBody, cur_user: dict = Depends(require_manager)):
    _check_month(body.year, body.month)
    start, end = month_bounds(date(body.year, body.month, 1))
    count = get_db().publish_shifts(start, end, group=body.group)
    _logger.info("schedule published | user=%s month=%04d-%02d group=%s shifts=%d",
                 cur_user.get('email'), body.year, body.month, body.group or '*', count)
    broadcast("schedule_changed", {"published": count, "month": f"{body.year:04d}-{body.month:02d}"})
    return {"ok": True, "published": count}


# ── Monthly employee order ───────────────────────────────────

class EmployeeOrderBody(BaseModel):
    employee_ids: List[str]


@router.get("/api/schedule/order/{year}/{month}", tags=["Schedule"], summary="Get monthly employee order")
def get_employee_order(year: int, month: int, _user: dict = Depends(require_auth)):
    _check_month(year, month)
    return {"month": f"{year:04d}-{month:02d}", "employee_ids": get_db().get_employee_order(f"{year:04d}-{month:02d}")}


@router.put("/api/schedule/order/{year}/{month}", tags=["Schedule"], summary="Set monthly employee order")
def set_employee_order(year: int, month: int, body: EmployeeOrderBody, _cur_user: dict = Depends(require_manager)):
    _check_month(year, month)
    month_key = f"{year:04d}-{month:02d}"
    get_db().set_employee_order(month_key, body.employee_ids)
    broadcast("schedule_changed", {"month": month_key})
    return {"ok": True, "month": month_key, "employee_ids": body.employee_ids}


# ── Shift templates ──────────────────────────────────────────

class ShiftTemplateBody(BaseModel):
    name: str = Field(..., min_length=1)
    label: str = ''
    start_time: str = Field(..., pattern=_HHMM)
    end_time: str = Field(..., pattern=_HHMM)
    color: Optional[str] = None
    break_start_time: Optional[str] = Field(None, pattern=_HHMM)
    break_end_time: Optional[str] = Field(None, pattern=_HHMM)
    is_unpaid_break: bool = True


class ShiftTemplateUpdate(BaseModel):
    name: Optional[str] = None
    label: Optional[str] = None
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    color: Optional[str] = None
    break_start_time: Optional[str] = Field(None, pattern=_HHMM)
    break_end_time: Optional[str] = Field(None, pattern=_HHMM)
    is_unpaid_break: Optional[bool] = None


@router.get("/api/shift-templates", tags=["Schedule"], summary="List shift templates")
def list_shift_templates(_user: dict = Depends(require_auth)):
    return get_db().get_shift_templates()


@router.post("/api/shift-templates", tags=["Schedule"], summary="Create shift template")
def create_shift_template(body: ShiftTemplateBody, _cur_user: dict = Depends(require_manager)):
    data = body.model_dump()
    _check_times(data)
    result = get_db().create_shift_template(data)
    return {"ok": True, "record": result}


@router.put("/api/shift-templates/{template_id}", tags=["Schedule"], summary="Update shift template")
def update_shift_template(template_id: str, body: ShiftTemplateUpdate, _cur_user: dict = Depends(require_manager)):
    data = body.model_dump(exclude_unset=True)
    _check_times(data)
    try:
        return {"ok": True, "record": get_db().update_shift_template(template_id, data)}
    except ValueError as e:
        raise raise_for_value_error(e)


@router.delete("/api/shift-templates/{template_id}", tags=["Schedule"], summary="Delete shift template")
def delete_shift_template(template_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_shift_template(template_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Shift template '{template_id}' not found")
    return {"ok": True, "deleted": count}


# ── Overtime / ND settings ───────────────────────────────────

class OvertimeSettingsBody(BaseModel):
    nd_start: str = Field('20:00', pattern=_HHMM)
    nd_end: str = Field('06:00', pattern=_HHMM)
    classifications: List[str] = ['Rank-and-File']
    ot_type_code: str = '801'
    nd_type_code: str = '803'


@router.get("/api/settings/overtime", tags=["Schedule"], summary="Overtime / ND settings")
def get_overtime_settings(_user: dict = Depends(require_manager)):
    settings = OvertimeSettings.from_dict(get_db().get_json(_OVERTIME_KEY))
    return {**settings.to_dict(), "available_classifications": EMPLOYEE_CLASSIFICATIONS}


@router.put("/api/settings/overtime", tags=["Schedule"], summary="Save overtime / ND settings")
def set_overtime_settings(body: OvertimeSettingsBody, _cur_user: dict = Depends(require_manager)):
    _check_times({'start_time': body.nd_start, 'end_time': body.nd_end})
    settings = OvertimeSettings.from_dict(body.model_dump())
    get_db().set_json(_OVERTIME_KEY, settings.to_dict())
    broadcast("settings_changed", {"key": _OVERTIME_KEY})
    return {"ok": True, **settings.to_dict()}


# ── Full state (fetch / save boundary) ───────────────────────

@router.get("/api/data", tags=["Schedule"], summary="Fetch full state", description="Every domain collection, hydrated. Password hashes and the SMTP password are never included.")
def fetch_all(_user: dict = Depends(require_auth)):
    return get_db().fetch_all()


@router.put("/api/data", tags=["Schedule"], summary="Save full state", description="Persist a full state snapshot in one transaction; any failure rolls the whole save back. Requires Admin role.")
def save_all(state: Dict[str, Any], cur_user: dict = Depends(require_admin)):
    db = get_db()
    before = {e['id'] for e in db.get_employees()}
    try:
        db.save_all(state)
    except ValueError as e:
        raise raise_for_value_error(e)
    except Exception as e:
        raise _sanitize_500(e, 'save_all')
    after = {e['id'] for e in db.get_employees()}
    for removed in before - after:
        invalidate_sessions_for_user(removed)
    _logger.warning("AUDIT SAVE_ALL | admin=%s employees=%d removed=%d",
                    cur_user.get('email'), len(after), len(before - after))
    broadcast("schedule_changed", {"full": True})
    return {"ok": True, "stats": db.get_stats()}
