"""Leave requests, work extensions, leave types and the leave application PDF."""
import re
from datetime import date, datetime
from fastapi import APIRouter, HTTPException, Query, Depends
from fastapi.responses import Response
from pydantic import BaseModel, Field
from typing import Optional
from ondutylib.leave_pdf import render_leave_pdf
from ondutylib.leave_rules import (
    WORK_EXTENSION, WORK_EXTENSION_COLOR, expires_on, is_work_extension, work_extension_state,
)
from ..dependencies import (
    get_db, require_auth, require_manager, is_manager, _logger, _sanitize_500,
    raise_for_value_error, WORK_EXTENSION_EXPIRY_DAYS,
)
from .events import broadcast

router = APIRouter()

_HHMM = r'^\d{2}:\d{2}$'
_HEX_COLOR_RE = re.compile(r'^#[0-9a-fA-F]{6}$')


def _with_state(entry: dict, today: Optional[date] = None) -> dict:
    """Attach the derived work-extension state and claim deadline."""
    if not is_work_extension(entry):
        return entry
    return {
        **entry,
        'work_extension_state': work_extension_state(entry, WORK_EXTENSION_EXPIRY_DAYS, today),
        'expires_on': expires_on(entry, WORK_EXTENSION_EXPIRY_DAYS),
    }


def _type_color(db, leave_type: str) -> Optional[str]:
    for lt in db.get_leave_types():
        if lt['type'] == leave_type:
            return lt.get('color')
    return WORK_EXTENSION_COLOR if leave_type == WORK_EXTENSION else None


def _load(db, leave_id: str) -> dict:
    entry = db.get_leave_request(leave_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Leave request '{leave_id}' not found")
    return entry


def _check_owner(entry: dict, user: dict) -> None:
    if not is_manager(user) and entry['employee_id'] != user['id']:
        raise HTTPException(status_code=403, detail="You can only manage your own requests")


def _check_range(data: dict) -> None:
    start, end = data.get('start_date'), data.get('end_date')
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    if data.get('is_all_day') is False and not (data.get('start_time') and data.get('end_time')):
        raise HTTPException(status_code=400, detail="A partial-day request needs start_time and end_time")


# ── Requests ─────────────────────────────────────────────────

class LeaveCreate(BaseModel):
    employee_id: Optional[str] = None
    type: str = Field(..., min_length=1)
    start_date: date
    end_date: Optional[date] = None
    is_all_day: bool = True
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    reason: Optional[str] = None
    date_filed: Optional[date] = None
    department: Optional[str] = None
    id_number: Optional[str] = None
    contact_info: Optional[str] = None


class WorkExtensionCreate(BaseModel):
    employee_id: Optional[str] = None
    original_shift_date: date
    original_start_time: str = Field(..., pattern=_HHMM)
    original_end_time: str = Field(..., pattern=_HHMM)
    start_date: Optional[date] = None
    start_time: str = Field(..., pattern=_HHMM)
    end_time: str = Field(..., pattern=_HHMM)
    reason: Optional[str] = None
    department: Optional[str] = None
    id_number: Optional[str] = None
    contact_info: Optional[str] = None


class LeaveUpdate(BaseModel):
    type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_all_day: Optional[bool] = None
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    reason: Optional[str] = None
    original_shift_date: Optional[date] = None
    original_start_time: Optional[str] = Field(None, pattern=_HHMM)
    original_end_time: Optional[str] = Field(None, pattern=_HHMM)
    department: Optional[str] = None
    id_number: Optional[str] = None
    contact_info: Optional[str] = None


def _resolve_employee(db, requested: Optional[str], user: dict) -> str:
    emp_id = requested or user['id']
    if emp_id != user['id'] and not is_manager(user):
        raise HTTPException(status_code=403, detail="Members can only file requests for themselves")
    if db.get_employee(emp_id) is None:
        raise HTTPException(status_code=404, detail=f"Employee '{emp_id}' not found")
    return emp_id


@router.get("/api/leave", tags=["Leave"], summary="List leave requests", description="Members see their own requests; managers see everyone's. Work extensions carry their derived claim state.")
def list_leave(
    employee_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    if not is_manager(user):
        employee_id = user['id']
    today = date.today()
    return [_with_state(e, today) for e in get_db().get_leave(employee_id=employee_id, status=status, leave_type=type)]


@router.get("/api/leave/{leave_id}", tags=["Leave"], summary="Get leave request")
def get_leave(leave_id: str, user: dict = Depends(require_auth)):
    entry = _load(get_db(), leave_id)
    _check_owner(entry, user)
    return _with_state(entry)


@router.post("/api/leave", tags=["Leave"], summary="File leave request", description="Creates a pending request dated today; the colour comes from the leave type.")
def create_leave(body: LeaveCreate, user: dict = Depends(require_auth)):
    db = get_db()
    emp_id = _resolve_employee(db, body.employee_id, user)
    data = body.model_dump()
    _check_range(data)
    color = _type_color(db, body.type)
    if color is None:
        raise HTTPException(status_code=400, detail=f"Unknown leave type '{body.type}'")
    data.update(employee_id=emp_id, color=color, status='pending')
    if data.get('date_filed') is None:
        data.pop('date_filed')
    try:
        result = db.create_leave(data)
    except Exception as e:
        raise _sanitize_500(e, 'create_leave')
    _logger.info("leave filed | user=%s employee=%s type=%s %s..%s", user.get('email'), emp_id,
                 body.type, body.start_date, body.end_date or body.start_date)
    broadcast("leave_changed", {"id": result['id']})
    return {"ok": True, "record": result}


@router.put("/api/leave/{leave_id}", tags=["Leave"], summary="Edit leave request", description="Only pending requests can be edited.")
def update_leave(leave_id: str, body: LeaveUpdate, user: dict = Depends(require_auth)):
    db = get_db()
    entry = _load(db, leave_id)
    _check_owner(entry, user)
    if entry.get('status') != 'pending':
        raise HTTPException(status_code=409, detail="Only pending requests can be edited")
    data = body.model_dump(exclude_unset=True)
    _check_range({**entry, **data})
    if data.get('type'):
        color = _type_color(db, data['type'])
        if color is None:
            raise HTTPException(status_code=400, detail=f"Unknown leave type '{data['type']}'")
        data['color'] = color
    try:
        result = db.update_leave(leave_id, data)
    except ValueError as e:
        raise raise_for_value_error(e)
    broadcast("leave_changed", {"id": leave_id})
    return {"ok": True, "record": result}


@router.delete("/api/leave/{leave_id}", tags=["Leave"], summary="Delete leave request", description="Members may withdraw their own pending requests; managers may delete any.")
def delete_leave(leave_id: str, user: dict = Depends(require_auth)):
    db = get_db()
    entry = _load(db, leave_id)
    _check_owner(entry, user)
    if not is_manager(user) and entry.get('status') != 'pending':
        raise HTTPException(status_code=409, detail="Only pending requests can be withdrawn")
    count = db.delete_leave(leave_id)
    broadcast("leave_changed", {"id": leave_id})
    return {"ok": True, "deleted": count}


def _decide(leave_id: str, status: str, user: dict) -> dict:
    db = get_db()
    entry = _load(db, leave_id)
    if entry.get('status') != 'pending':
        raise HTTPException(status_code=409, detail="Request has already been processed")
    data = {
        'status': status,
        'managed_by': user['id'],
        'managed_at': datetime.now().isoformat(timespec='seconds'),
        'color': _type_color(db, entry['type']) or entry.get('color'),
    }
    if is_work_extension(entry):
        data['work_extension_status'] = 'not-claimed' if status == 'approved' else None
    result = db.update_leave(leave_id, data)
    _logger.warning("AUDIT LEAVE_%s | manager=%s request=%s employee=%s type=%s", status.upper(),
                    user.get('email'), leave_id, entry['employee_id'], entry['type'])
    broadcast("leave_changed", {"id": leave_id, "status": status})
    return {"ok": True, "record": _with_state(result)}


@router.post("/api/leave/{leave_id}/approve", tags=["Leave"], summary="Approve request")
def approve_leave(leave_id: str, user: dict = Depends(require_manager)):
    return _decide(leave_id, 'approved', user)


@router.post("/api/leave/{leave_id}/reject", tags=["Leave"], summary="Reject request")
def reject_leave(leave_id: str, user: dict = Depends(require_manager)):
    return _decide(leave_id, 'rejected', user)


@router.get("/api/leave/{leave_id}/pdf", tags=["Leave"], summary="Leave application PDF", description="One-page application form with employee details, leave period, reason, status and approver.")
def leave_pdf(leave_id: str, user: dict = Depends(require_auth)):
    db = get_db()
    entry = _load(db, leave_id)
    _check_owner(entry, user)
    employee = db.get_employee(entry['employee_id'])
    if employee is None:
        raise HTTPException(status_code=404, detail=f"Employee '{entry['employee_id']}' not found")
    approver = db.get_employee(entry['managed_by']) if entry.get('managed_by') else None
    try:
        content = render_leave_pdf(entry, employee, approver)
    except Exception as e:
        raise _sanitize_500(e, f'leave_pdf/{leave_id}')
    filename = f"Leave Application - {employee.get('last_name', '')} {entry['start_date'].isoformat()}.pdf"
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── Work extensions ──────────────────────────────────────────

@router.get("/api/work-extensions", tags=["Leave"], summary="List work extensions", description="Work-extension requests with their state: pending, rejected, claimed, expired or not-claimed.")
def list_work_extensions(state: Optional[str] = Query(None), user: dict = Depends(require_auth)):
    employee_id = None if is_manager(user) else user['id']
    today = date.today()
    items = [_with_state(e, today) for e in get_db().get_leave(employee_id=employee_id, leave_type=WORK_EXTENSION)]
    if state:
        items = [e for e in items if e['work_extension_state'] == state]
    return items


@router.post("/api/work-extensions", tags=["Leave"], summary="File work extension", description="Request credit for hours worked beyond a shift. Type `Work Extension`, colour `#f39c12` unless the leave type says otherwise.")
def create_work_extension(body: WorkExtensionCreate, user: dict = Depends(require_auth)):
    db = get_db()
    emp_id = _resolve_employee(db, body.employee_id, user)
    data = body.model_dump()
    data.update(
        employee_id=emp_id,
        type=WORK_EXTENSION,
        color=_type_color(db, WORK_EXTENSION),
        status='pending',
        is_all_day=False,
        start_date=body.start_date or body.original_shift_date,
    )
    data['end_date'] = data['start_date']
    result = db.create_leave(data)
    _logger.info("work extension filed | user=%s employee=%s shift=%s", user.get('email'), emp_id, body.original_shift_date)
    broadcast("leave_changed", {"id": result['id']})
    return {"ok": True, "record": _with_state(result)}


@router.post("/api/work-extensions/{leave_id}/claim", tags=["Leave"], summary="Claim work extension", description="Mark an approved, unexpired work extension as claimed (used as offset).")
def claim_work_extension(leave_id: str, user: dict = Depends(require_auth)):
    db = get_db()
    entry = _load(db, leave_id)
    _check_owner(entry, user)
    if not is_work_extension(entry):
        raise HTTPException(status_code=400, detail="Only work extensions can be claimed")
    state = work_extension_state(entry, WORK_EXTENSION_EXPIRY_DAYS)
    if state != 'not-claimed':
        raise HTTPException(status_code=409, detail=f"Work extension cannot be claimed (state: {state})")
    result = db.update_leave(leave_id, {'work_extension_status': 'claimed'})
    _logger.info("work extension claimed | user=%s request=%s", user.get('email'), leave_id)
    broadcast("leave_changed", {"id": leave_id, "status": "claimed"})
    return {"ok": True, "record": _with_state(result)}


@router.delete("/api/work-extensions", tags=["Leave"], summary="Clear all work extensions")
def clear_work_extensions(user: dict = Depends(require_manager)):
    count = get_db().delete_leave_by_type(WORK_EXTENSION)
    _logger.warning("AUDIT WORK_EXTENSIONS_CLEAR | manager=%s deleted=%d", user.get('email'), count)
    broadcast("leave_changed", {"cleared": count})
    return {"ok": True, "deleted": count}


# ── Leave types ──────────────────────────────────────────────

class LeaveTypeBody(BaseModel):
    type: str = Field(..., min_length=1)
    color: str = '#000000'


class LeaveTypeColor(BaseModel):
    color: str


def _check_color(color: str) -> str:
    if not _HEX_COLOR_RE.match(color):
        raise HTTPException(status_code=400, detail="color must be a hex value like #3b82f6")
    return color.lower()


@router.get("/api/leave-types", tags=["Leave"], summary="List leave types")
def list_leave_types(_user: dict = Depends(require_auth)):
    return get_db().get_leave_types()


@router.post("/api/leave-types", tags=["Leave"], summary="Create leave type")
def create_leave_type(body: LeaveTypeBody, _cur_user: dict = Depends(require_manager)):
    try:
        result = get_db().create_leave_type(body.type.strip(), _check_color(body.color))
    except ValueError as e:
        raise raise_for_value_error(e)
    return {"ok": True, "record": result}


@router.put("/api/leave-types/{leave_type}", tags=["Leave"], summary="Change leave type colour")
def update_leave_type(leave_type: str, body: LeaveTypeColor, _cur_user: dict = Depends(require_manager)):
    try:
        result = get_db().update_leave_type(leave_type, _check_color(body.color))
    except ValueError as e:
        raise raise_for_value_error(e)
    return {"ok": True, "record": result}


@router.delete("/api/leave-types/{leave_type}", tags=["Leave"], summary="Delete leave type", description="Existing requests of this type are kept.")
def delete_leave_type(leave_type: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_leave_type(leave_type)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Leave type '{leave_type}' not found")
    return {"ok": True, "deleted": count}
