"""Master data router: holidays, notes, tasks and communication allowances."""
import datetime as _dt
from datetime import date
from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel, Field
from typing import Optional
from ondutylib.names import full_name
from ..dependencies import (
    get_db, require_auth, require_manager, is_manager, _logger, raise_for_value_error,
)
from .events import broadcast

router = APIRouter()


# ── Holidays ─────────────────────────────────────────────────

class HolidayBody(BaseModel):
    date: _dt.date
    title: str = Field(..., min_length=1)


class HolidayUpdate(BaseModel):
    date: Optional[_dt.date] = None
    title: Optional[str] = None


@router.get("/api/holidays", tags=["Master Data"], summary="List holidays")
def get_holidays(year: Optional[int] = Query(None), _user: dict = Depends(require_auth)):
    return get_db().get_holidays(year)


@router.post("/api/holidays", tags=["Master Data"], summary="Create holiday")
def create_holiday(body: HolidayBody, _cur_user: dict = Depends(require_manager)):
    result = get_db().create_holiday(body.model_dump())
    broadcast("schedule_changed", {"holiday": result['id']})
    return {"ok": True, "record": result}


@router.put("/api/holidays/{holiday_id}", tags=["Master Data"], summary="Update holiday")
def update_holiday(holiday_id: str, body: HolidayUpdate, _cur_user: dict = Depends(require_manager)):
    data = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    try:
        result = get_db().update_holiday(holiday_id, data)
    except ValueError as e:
        raise raise_for_value_error(e)
    broadcast("schedule_changed", {"holiday": holiday_id})
    return {"ok": True, "record": result}


@router.delete("/api/holidays/{holiday_id}", tags=["Master Data"], summary="Delete holiday")
def delete_holiday(holiday_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_holiday(holiday_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Holiday '{holiday_id}' not found")
    broadcast("schedule_changed", {"holiday": holiday_id})
    return {"ok": True, "deleted": count}


# ── Notes ────────────────────────────────────────────────────

class NoteBody(BaseModel):
    date: _dt.date
    title: str = Field(..., min_length=1)
    description: Optional[str] = None


class NoteUpdate(BaseModel):
    date: Optional[_dt.date] = None
    title: Optional[str] = None
    description: Optional[str] = None


@router.get("/api/notes", tags=["Master Data"], summary="List schedule notes")
def get_notes(start: Optional[date] = Query(None), end: Optional[date] = Query(None),
              _user: dict = Depends(require_auth)):
    return get_db().get_notes(start, end)


@router.post("/api/notes", tags=["Master Data"], summary="Create note")
def create_note(body: NoteBody, _cur_user: dict = Depends(require_manager)):
    result = get_db().create_note(body.model_dump())
    broadcast("schedule_changed", {"note": result['id']})
    return {"ok": True, "record": result}


@router.put("/api/notes/{note_id}", tags=["Master Data"], summary="Update note")
def update_note(note_id: str, body: NoteUpdate, _cur_user: dict = Depends(require_manager)):
    try:
        result = get_db().update_note(note_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise raise_for_value_error(e)
    broadcast("schedule_changed", {"note": note_id})
    return {"ok": True, "record": result}


@router.delete("/api/notes/{note_id}", tags=["Master Data"], summary="Delete note")
def delete_note(note_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_note(note_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Note '{note_id}' not found")
    broadcast("schedule_changed", {"note": note_id})
    return {"ok": True, "deleted": count}


# ── Tasks ────────────────────────────────────────────────────

class TaskBody(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    scope: str = Field('shift', pattern=r'^(shift|global)$')
    shift_id: Optional[str] = None
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    scope: Optional[str] = Field(None, pattern=r'^(shift|global)$')
    shift_id: Optional[str] = None
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[str] = Field(None, pattern=r'^(pending|completed)$')


@router.get("/api/tasks", tags=["Master Data"], summary="List tasks", description="Members see tasks assigned to them plus global tasks.")
def get_tasks(
    assignee_id: Optional[str] = Query(None),
    shift_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    db = get_db()
    if is_manager(user):
        return db.get_tasks(assignee_id=assignee_id, shift_id=shift_id, status=status)
    return [
        t for t in db.get_tasks(shift_id=shift_id, status=status)
        if t.get('assignee_id') == user['id'] or t.get('scope') == 'global'
    ]


@router.post("/api/tasks", tags=["Master Data"], summary="Create task")
def create_task(body: TaskBody, cur_user: dict = Depends(require_manager)):
    db = get_db()
    if body.scope == 'shift' and not (body.shift_id or body.assignee_id):
        raise HTTPException(status_code=400, detail="A shift task needs a shift_id or an assignee_id")
    data = body.model_dump()
    if body.shift_id:
        shift = db.get_shift(body.shift_id)
        if shift is None:
            raise HTTPException(status_code=404, detail=f"Shift '{body.shift_id}' not found")
        data['assignee_id'] = data['assignee_id'] or shift['employee_id']
        data['due_date'] = data['due_date'] or shift['date']
    result = db.create_task({**data, 'created_by': cur_user['id']})
    broadcast("task_changed", {"id": result['id']})
    return {"ok": True, "record": result}


@router.put("/api/tasks/{task_id}", tags=["Master Data"], summary="Update task")
def update_task(task_id: str, body: TaskUpdate, _cur_user: dict = Depends(require_manager)):
    try:
        result = get_db().update_task(task_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise raise_for_value_error(e)
    broadcast("task_changed", {"id": task_id})
    return {"ok": True, "record": result}


@router.post("/api/tasks/{task_id}/toggle", tags=["Master Data"], summary="Toggle task", description="Switch pending and completed. Members may only toggle tasks assigned to them.")
def toggle_task(task_id: str, user: dict = Depends(require_auth)):
    db = get_db()
    task = db.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    if not is_manager(user) and task.get('assignee_id') != user['id']:
        raise HTTPException(status_code=403, detail="You can only complete your own tasks")
    result = db.toggle_task(task_id)
    broadcast("task_changed", {"id": task_id, "status": result['status']})
    return {"ok": True, "record": result}


@router.delete("/api/tasks/{task_id}", tags=["Master Data"], summary="Delete task")
def delete_task(task_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_task(task_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    broadcast("task_changed", {"id": task_id})
    return {"ok": True, "deleted": count}


# ── Communication allowances ─────────────────────────────────

class AllowanceBody(BaseModel):
    employee_id: str
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    balance: float = Field(..., ge=0)
    as_of_date: Optional[date] = None
    screenshot: Optional[str] = None


def allowance_view(employee: dict, record: Optional[dict]) -> dict:
    """One tracker row: the stored balance plus derived limit, excess and eligibility."""
    allocation = float(employee.get('load_allocation') or 0)
    percentage = float(employee.get('load_limit_percentage') or 150)
    balance = float(record['balance']) if record and record.get('balance') is not None else None
    return {
        'id': record['id'] if record else None,
        'employee_id': employee['id'],
        'employee_name': full_name(employee),
        'group_name': employee.get('group_name'),
        'load_allocation': allocation,
        'load_limit_percentage': percentage,
        'limit': round(allocation * percentage / 100, 2),
        'balance': balance,
        'excess': round(max(balance - allocation, 0), 2) if balance is not None else None,
        'will_receive': balance <= allocation if balance is not None else None,
        'as_of_date': record.get('as_of_date') if record else None,
        'screenshot': record.get('screenshot') if record else None,
    }


@router.get("/api/allowances", tags=["Master Data"], summary="Allowance tracker", description="One row per employee with a load allocation for the given month. Members see only their own row.")
def get_allowances(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    group: Optional[str] = Query(None),
    user: dict = Depends(require_auth),
):
    db = get_db()
    records = {r['employee_id']: r for r in db.get_allowances(year, month)}
    employees = db.get_employees(group=group)
    if not is_manager(user):
        employees = [e for e in employees if e['id'] == user['id']]
    return [
        allowance_view(e, records.get(e['id']))
        for e in employees
        if e.get('load_allocation') or e['id'] in records
    ]


@router.put("/api/allowances", tags=["Master Data"], summary="Record allowance balance", description="Upsert the balance of one employee for one month.")
def upsert_allowance(body: AllowanceBody, cur_user: dict = Depends(require_manager)):
    db = get_db()
    employee = db.get_employee(body.employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail=f"Employee '{body.employee_id}' not found")
    record = db.upsert_allowance(body.employee_id, body.year, body.month, body.balance,
                                 body.as_of_date, body.screenshot)
    _logger.info("allowance recorded | user=%s employee=%s %04d-%02d balance=%.2f",
                 cur_user.get('email'), body.employee_id, body.year, body.month, body.balance)
    return {"ok": True, "record": allowance_view(employee, record)}


@router.delete("/api/allowances/{record_id}", tags=["Master Data"], summary="Delete allowance record")
def delete_allowance(record_id: str, _cur_user: dict = Depends(require_manager)):
    count = get_db().delete_allowance(record_id)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Allowance '{record_id}' not found")
    return {"ok": True, "deleted": count}
