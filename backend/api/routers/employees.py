"""Employees (team roster), own profile and groups router."""
from datetime import date
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from typing import Optional, Dict
from ..dependencies import (
    get_db, require_admin, require_auth, is_manager, _sanitize_500, _logger,
    raise_for_value_error, invalidate_sessions_for_user, refresh_sessions_for_user,
)
from .events import broadcast

router = APIRouter()

# Profile fields other members never see.
_PRIVATE_FIELDS = ('signature', 'birth_date', 'personnel_number', 'load_allocation', 'load_limit_percentage')


def _public_view(emp: dict) -> dict:
    return {k: v for k, v in emp.items() if k not in _PRIVATE_FIELDS}


@router.get("/api/employees", tags=["Employees"], summary="List employees", description="Return the team roster, optionally filtered by group. Password hashes are never included.")
def get_employees(group: Optional[str] = None, user: dict = Depends(require_auth)):
    employees = get_db().get_employees(group=group)
    if is_manager(user):
        return employees
    return [e if e['id'] == user['id'] else _public_view(e) for e in employees]


@router.get("/api/employees/{emp_id}", tags=["Employees"], summary="Get employee by ID")
def get_employee(emp_id: str, user: dict = Depends(require_auth)):
    e = get_db().get_employee(emp_id)
    if e is None:
        raise HTTPException(status_code=404, detail=f"Employee '{emp_id}' not found")
    if is_manager(user) or e['id'] == user['id']:
        return e
    return _public_view(e)


# ── Write: Employees ─────────────────────────────────────────

class EmployeeCreate(BaseModel):
    first_name: str
    last_name: str
    email: str
    middle_initial: Optional[str] = Field(None, max_length=1)
    employee_number: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    position: Optional[str] = None
    role: str = 'member'
    group_name: Optional[str] = None
    avatar: Optional[str] = None
    load_allocation: Optional[float] = None
    birth_date: Optional[date] = None
    start_date: Optional[date] = None
    signature: Optional[str] = None
    visibility: Optional[Dict[str, bool]] = None
    last_promotion_date: Optional[date] = None
    reports_to: Optional[str] = None
    personnel_number: Optional[str] = None
    employee_classification: Optional[str] = None
    load_limit_percentage: Optional[float] = 150


class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    middle_initial: Optional[str] = Field(None, max_length=1)
    employee_number: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    position: Optional[str] = None
    role: Optional[str] = None
    group_name: Optional[str] = None
    avatar: Optional[str] = None
    load_allocation: Optional[float] = None
    birth_date: Optional[date] = None
    start_date: Optional[date] = None
    signature: Optional[str] = None
    visibility: Optional[Dict[str, bool]] = None
    last_promotion_date: Optional[date] = None
    reports_to: Optional[str] = None
    personnel_number: Optional[str] = None
    employee_classification: Optional[str] = None
    load_limit_percentage: Optional[float] = None


class ProfileUpdate(BaseModel):
    phone: Optional[str] = None
    avatar: Optional[str] = None
    signature: Optional[str] = None
    password: Optional[str] = None


@router.post("/api/employees", tags=["Employees"], summary="Create employee", description="Create a new employee. The password defaults to `password`. Requires Admin role.")
def create_employee(body: EmployeeCreate, cur_user: dict = Depends(require_admin)):
    try:
        result = get_db().create_employee(body.model_dump())
        _logger.warning("AUDIT EMPLOYEE_CREATE | admin=%s email=%s role=%s", cur_user.get('email'), result['email'], result['role'])
        broadcast("roster_changed", {"id": result['id']})
        return {"ok": True, "record": result}
    except ValueError as e:
        raise raise_for_value_error(e)
    except Exception as e:
        raise _sanitize_500(e, 'create_employee')


@router.put("/api/employees/{emp_id}", tags=["Employees"], summary="Update employee", description="Update an existing employee. An empty password keeps the current one. Requires Admin role.")
def update_employee(emp_id: str, body: EmployeeUpdate, cur_user: dict = Depends(require_admin)):
    try:
        data = body.model_dump(exclude_unset=True)
        for required in ('first_name', 'last_name', 'email', 'role'):
            if data.get(required) is None:
                data.pop(required, None)
        result = get_db().update_employee(emp_id, data)
        if data.get('password'):
            invalidate_sessions_for_user(emp_id)
        else:
            refresh_sessions_for_user(result)
        _logger.warning("AUDIT EMPLOYEE_UPDATE | admin=%s target=%s fields=%s", cur_user.get('email'), emp_id, sorted(data))
        broadcast("roster_changed", {"id": emp_id})
        return {"ok": True, "record": result}
    except HTTPException:
        raise
    except ValueError as e:
        raise raise_for_value_error(e)
    except Exception as e:
        raise _sanitize_500(e, f'update_employee/{emp_id}')


@router.delete("/api/employees/{emp_id}", tags=["Employees"], summary="Delete employee", description="Delete an employee with their shifts, leave, allowances and tardy records. The default administrator cannot be deleted. Requires Admin role.")
def delete_employee(emp_id: str, cur_user: dict = Depends(require_admin)):
    try:
        count = get_db().delete_employee(emp_id)
        if count == 0:
            raise HTTPException(status_code=404, detail=f"Employee '{emp_id}' not found")
        invalidate_sessions_for_user(emp_id)
        _logger.warning("AUDIT EMPLOYEE_DELETE | admin=%s target=%s", cur_user.get('email'), emp_id)
        broadcast("roster_changed", {"id": emp_id})
        return {"ok": True, "deleted": count}
    except HTTPException:
        raise
    except ValueError as e:
        raise raise_for_value_error(e)
    except Exception as e:
        raise _sanitize_500(e, f'delete_employee/{emp_id}')


# ── Own profile ───────────────────────────────────────────────

@router.get("/api/profile", tags=["Employees"], summary="Own profile")
def get_profile(user: dict = Depends(require_auth)):
    e = get_db().get_employee(user['id'])
    if e is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return e


@router.put("/api/profile", tags=["Employees"], summary="Update own profile", description="Members may change their phone, avatar, signature (PNG data URI) and password.")
def update_profile(body: ProfileUpdate, user: dict = Depends(require_auth)):
    data = body.model_dump(exclude_unset=True)
    if data.get('signature') and not data['signature'].startswith('data:image/png'):
        raise HTTPException(status_code=400, detail="Signature must be a PNG data URI")
    try:
        result = get_db().update_employee(user['id'], data)
    except ValueError as e:
        raise raise_for_value_error(e)
    if data.get('password'):
        _logger.warning("AUDIT PASSWORD_CHANGE | user=%s via=profile", user.get('email'))
    return {"ok": True, "record": result}


# ── Groups ────────────────────────────────────────────────────

class GroupBody(BaseModel):
    name: str = Field(..., min_length=1)


@router.get("/api/groups", tags=["Groups"], summary="List groups", description="Group names with their member counts.")
def get_groups(_user: dict = Depends(require_auth)):
    db = get_db()
    counts: Dict[str, int] = {}
    for e in db.get_employees():
        if e.get('group_name'):
            counts[e['group_name']] = counts.get(e['group_name'], 0) + 1
    return [{"name": g, "member_count": counts.get(g, 0)} for g in db.get_groups()]


@router.post("/api/groups", tags=["Groups"], summary="Create group")
def create_group(body: GroupBody, _cur_user: dict = Depends(require_admin)):
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Group name must not be empty")
    try:
        name = get_db().create_group(body.name)
        broadcast("roster_changed", {"group": name})
        return {"ok": True, "name": name}
    except ValueError as e:
        raise raise_for_value_error(e)


@router.put("/api/groups/{name}", tags=["Groups"], summary="Rename group", description="Rename a group; its members move along.")
def rename_group(name: str, body: GroupBody, _cur_user: dict = Depends(require_admin)):
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Group name must not be empty")
    try:
        moved = get_db().rename_group(name, body.name)
    except ValueError as e:
        raise raise_for_value_error(e)
    broadcast("roster_changed", {"group": body.name.strip()})
    return {"ok": True, "name": body.name.strip(), "members_moved": moved}


@router.delete("/api/groups/{name}", tags=["Groups"], summary="Delete group", description="Remove a group; its members become ungrouped.")
def delete_group(name: str, _cur_user: dict = Depends(require_admin)):
    count = get_db().delete_group(name)
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Group '{name}' not found")
    broadcast("roster_changed", {"group": name})
    return {"ok": True, "deleted": count}
