"""
High-level database access for OnDuty scheduling data (SQLite).

Every statement is parameterized; table and column names only ever come from
the constants in this module.
"""
import os
import re
import json
import uuid
import base64
import sqlite3
import hashlib
import secrets
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import List, Dict, Any, Optional, Iterable

from .timeutil import parse_date

# Paths whose schema has already been applied in this process.
_SCHEMA_READY: set = set()

DEFAULT_ADMIN_ID = 'emp-admin-01'
DEFAULT_PASSWORD = 'password'
ROLES = ('admin', 'manager', 'member')

ALL_VIEWS = [
    'dashboard', 'my-schedule', 'my-tasks', 'schedule', 'onduty', 'time-off',
    'work-extensions', 'allowance', 'task-manager', 'team', 'org-chart',
    'holidays', 'reports', 'admin', 'permissions', 'smtp-settings', 'danger-zone',
]
_DEFAULT_PERMISSIONS = {
    'admin': ALL_VIEWS,
    'manager': [v for v in ALL_VIEWS if v not in ('admin', 'permissions', 'smtp-settings', 'danger-zone')],
    'member': ['dashboard', 'my-schedule', 'my-tasks', 'time-off', 'work-extensions', 'team', 'holidays'],
}
_DEFAULT_LEAVE_TYPES = [
    ('VL', '#3b82f6'), ('EL', '#ef4444'), ('OFFSET', '#6b7280'), ('SL', '#f97316'),
    ('BL', '#14b8a6'), ('PL', '#8b5cf6'), ('ML', '#ec4899'),
    ('TARDY', '#eab308'), ('Work Extension', '#f39c12'),
]
_DEFAULT_VISIBILITY = {'schedule': True, 'on_duty': True, 'org_chart': True, 'mobile_load': True}

TEMPLATE_KEYS = (
    'workScheduleTemplate', 'attendanceSheetTemplate', 'wfhCertificationTemplate',
    'workExtensionTemplate', 'overtimeTemplate',
)
_EMPLOYEE_ORDER_KEY = 'monthlyEmployeeOrder'

_SCHEMA = """
CREATE TABLE IF NOT EXISTS employees (
    id TEXT PRIMARY KEY,
    employee_number TEXT,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    middle_initial TEXT,
    email TEXT NOT NULL UNIQUE,
    phone TEXT,
    password_hash TEXT,
    position TEXT,
    role TEXT NOT NULL DEFAULT 'member',
    group_name TEXT,
    avatar TEXT,
    load_allocation REAL,
    birth_date TEXT,
    start_date TEXT,
    signature TEXT,
    visibility TEXT,
    last_promotion_date TEXT,
    reports_to TEXT,
    personnel_number TEXT,
    employee_classification TEXT,
    load_limit_percentage REAL
);
CREATE TABLE IF NOT EXISTS groups (name TEXT PRIMARY KEY);
CREATE TABLE IF NOT EXISTS shifts (
    id TEXT PRIMARY KEY,
    employee_id TEXT NOT NULL,
    label TEXT,
    start_time TEXT,
    end_time TEXT,
    date TEXT NOT NULL,
    color TEXT,
    is_day_off INTEGER DEFAULT 0,
    is_holiday_off INTEGER DEFAULT 0,
    status TEXT DEFAULT 'draft',
    break_start_time TEXT,
    break_end_time TEXT,
    is_unpaid_break INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_shifts_emp_date ON shifts (employee_id, date);
CREATE TABLE IF NOT EXISTS leave (
    id TEXT PRIMARY KEY,
    employee_id TEXT NOT NULL,
    type TEXT NOT NULL,
    color TEXT,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    is_all_day INTEGER DEFAULT 1,
    start_time TEXT,
    end_time TEXT,
    status TEXT DEFAULT 'pending',
    reason TEXT,
    requested_at TEXT,
    managed_by TEXT,
    managed_at TEXT,
    original_shift_date TEXT,
    original_start_time TEXT,
    original_end_time TEXT,
    date_filed TEXT,
    department TEXT,
    id_number TEXT,
    contact_info TEXT,
    work_extension_status TEXT
);
CREATE TABLE IF NOT EXISTS leave_days (
    leave_id TEXT NOT NULL,
    employee_id TEXT NOT NULL,
    date TEXT NOT NULL,
    PRIMARY KEY (leave_id, date)
);
CREATE INDEX IF NOT EXISTS idx_leave_days_emp_date ON leave_days (employee_id, date);
CREATE TABLE IF NOT EXISTS notes (id TEXT PRIMARY KEY, date TEXT NOT NULL, title TEXT, description TEXT);
CREATE TABLE IF NOT EXISTS holidays (id TEXT PRIMARY KEY, date TEXT NOT NULL, title TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    shift_id TEXT,
    assignee_id TEXT,
    scope TEXT DEFAULT 'shift',
    title TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'pending',
    completed_at TEXT,
    due_date TEXT,
    created_by TEXT
);
CREATE TABLE IF NOT EXISTS communication_allowances (
    id TEXT PRIMARY KEY,
    employee_id TEXT NOT NULL,
    year INTEGER NOT NULL,
    month INTEGER NOT NULL,
    balance REAL,
    as_of_date TEXT,
    screenshot TEXT
);
CREATE TABLE IF NOT EXISTS smtp_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    host TEXT,
    port INTEGER,
    secure INTEGER DEFAULT 0,
    username TEXT,
    password TEXT,
    from_email TEXT,
    from_name TEXT
);
CREATE TABLE IF NOT EXISTS tardy_records (
    id TEXT PRIMARY KEY,
    employee_id TEXT,
    employee_name TEXT,
    date TEXT NOT NULL,
    schedule TEXT,
    time_in TEXT,
    time_out TEXT,
    remarks TEXT
);
CREATE TABLE IF NOT EXISTS shift_templates (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    label TEXT,
    start_time TEXT,
    end_time TEXT,
    color TEXT,
    break_start_time TEXT,
    break_end_time TEXT,
    is_unpaid_break INTEGER DEFAULT 0
);
CREATE TABLE IF NOT EXISTS leave_types (type TEXT PRIMARY KEY, color TEXT);
CREATE TABLE IF NOT EXISTS key_value_store (key TEXT PRIMARY KEY, value TEXT);
CREATE TABLE IF NOT EXISTS permissions (role TEXT PRIMARY KEY, allowed_views TEXT NOT NULL);
"""

EMPLOYEE_COLUMNS = (
    'id', 'employee_number', 'first_name', 'last_name', 'middle_initial', 'email', 'phone',
    'position', 'role', 'group_name', 'avatar', 'load_allocation', 'birth_date', 'start_date',
    'signature', 'visibility', 'last_promotion_date', 'reports_to', 'personnel_number',
    'employee_classification', 'load_limit_percentage',
)
SHIFT_COLUMNS = (
    'id', 'employee_id', 'label', 'start_time', 'end_time', 'date', 'color', 'is_day_off',
    'is_holiday_off', 'status', 'break_start_time', 'break_end_time', 'is_unpaid_break',
)
LEAVE_COLUMNS = (
    'id', 'employee_id', 'type', 'color', 'start_date', 'end_date', 'is_all_day', 'start_time',
    'end_time', 'status', 'reason', 'requested_at', 'managed_by', 'managed_at',
    'original_shift_date', 'original_start_time', 'original_end_time', 'date_filed',
    'department', 'id_number', 'contact_info', 'work_extension_status',
)
NOTE_COLUMNS = ('id', 'date', 'title', 'description')
HOLIDAY_COLUMNS = ('id', 'date', 'title')
TASK_COLUMNS = (
    'id', 'shift_id', 'assignee_id', 'scope', 'title', 'description', 'status',
    'completed_at', 'due_date', 'created_by',
)
ALLOWANCE_COLUMNS = ('id', 'employee_id', 'year', 'month', 'balance', 'as_of_date', 'screenshot')
TARDY_COLUMNS = ('id', 'employee_id', 'employee_name', 'date', 'schedule', 'time_in', 'time_out', 'remarks')
SHIFT_TEMPLATE_COLUMNS = (
    'id', 'name', 'label', 'start_time', 'end_time', 'color', 'break_start_time',
    'break_end_time', 'is_unpaid_break',
)
SMTP_COLUMNS = ('host', 'port', 'secure', 'username', 'password', 'from_email', 'from_name')

_DATE_FIELDS = {
    'birth_date', 'start_date', 'last_promotion_date', 'date', 'end_date',
    'original_shift_date', 'date_filed', 'due_date', 'as_of_date',
}
_BOOL_FIELDS = {'is_day_off', 'is_holiday_off', 'is_unpaid_break', 'is_all_day', 'secure'}
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# ── Row conversion helpers ─────────────────────────────────────
def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _parse_visibility(raw: Optional[str]) -> Dict[str, bool]:
    if not raw:
        return dict(_DEFAULT_VISIBILITY)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return dict(_DEFAULT_VISIBILITY)
    return {**_DEFAULT_VISIBILITY, **parsed} if isinstance(parsed, dict) else dict(_DEFAULT_VISIBILITY)


def _hydrate(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert a raw row into a domain record (dates, bools, JSON)."""
    rec = dict(row)
    for key, value in rec.items():
        if key in _DATE_FIELDS:
            rec[key] = parse_date(value)
        elif key in _BOOL_FIELDS:
            rec[key] = bool(value)
    if 'visibility' in rec:
        rec['visibility'] = _parse_visibility(rec['visibility'])
    rec.pop('password_hash', None)
    return rec


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return datetime.now().isoformat(timespec='seconds')


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), bytes.fromhex(salt), 100_000)
    return f"pbkdf2_sha256${salt}${digest.hex()}"


def check_password(password: str, stored: Optional[str]) -> bool:
    try:
        _algo, salt, _digest = stored.split('$')
    except (AttributeError, ValueError):
        return False
    return secrets.compare_digest(hash_password(password, salt), stored)


def allowance_id(employee_id: str, year: int, month: int) -> str:
    return f"ca-{employee_id}-{year}-{month}"


class OnDutyDatabase:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path not in _SCHEMA_READY:
            self._ensure_schema()
            _SCHEMA_READY.add(db_path)

    # ── Connection handling ────────────────────────────────────
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _tx(self):
        """One connection, one transaction: commit on success, roll back on error."""
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _query(self, sql: str, params: Iterable = ()) -> List[Dict[str, Any]]:
        with self._tx() as conn:
            return [_hydrate(r) for r in conn.execute(sql, tuple(params)).fetchall()]

    def _query_one(self, sql: str, params: Iterable = ()) -> Optional[Dict[str, Any]]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, columns: tuple, record: dict,
                conflict_key: Optional[str] = None) -> None:
        cols = ', '.join(columns)
        marks = ', '.join('?' for _ in columns)
        sql = f"INSERT INTO {table} ({cols}) VALUES ({marks})"
        if conflict_key:
            updates = ', '.join(f"{c}=excluded.{c}" for c in columns if c != conflict_key)
            sql += f" ON CONFLICT({conflict_key}) DO UPDATE SET {updates}"
        conn.execute(sql, [_to_db(record.get(c)) for c in columns])

    @staticmethod
    def _update(conn: sqlite3.Connection, table: str, columns: tuple, record_id: str, data: dict) -> int:
        fields = [c for c in columns if c != 'id' and c in data]
        if not fields:
            return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE id = ?", (record_id,)).fetchone()[0]
        assignments = ', '.join(f"{c} = ?" for c in fields)
        cur = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [_to_db(data[c]) for c in fields] + [record_id],
        )
        return cur.rowcount

    def _ensure_schema(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        with self._tx() as conn:
            conn.executescript(_SCHEMA)
        self._seed_defaults()

    def _seed_defaults(self) -> None:
        with self._tx() as conn:
            if conn.execute("SELECT COUNT(*) FROM leave_types").fetchone()[0] == 0:
                conn.executemany("INSERT INTO leave_types (type, color) VALUES (?, ?)", _DEFAULT_LEAVE_TYPES)
            for role, views in _DEFAULT_PERMISSIONS.items():
                conn.execute(
                    "INSERT OR IGNORE INTO permissions (role, allowed_views) VALUES (?, ?)",
                    (role, json.dumps(views)),
                )

    # ── Stats ──────────────────────────────────────────────────
    def get_stats(self) -> Dict[str, int]:
        tables = ('employees', 'groups', 'shifts', 'leave', 'holidays', 'tasks', 'shift_templates', 'leave_types')
        with self._tx() as conn:
            return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}

    # ── Employees ──────────────────────────────────────────────
    def _default_admin(self) -> Dict[str, Any]:
        return {
            'id': DEFAULT_ADMIN_ID,
            'employee_number': '001',
            'first_name': 'Super',
            'last_name': 'Admin',
            'email': 'admin@onduty.local',
            'phone': '123-456-7890',
            'position': 'System Administrator',
            'role': 'admin',
            'group_name': 'Administration',
            'visibility': dict(_DEFAULT_VISIBILITY),
        }

    def ensure_default_admin(self) -> bool:
        """Insert the default administrator when the roster is empty."""
        with self._tx() as conn:
            if conn.execute("SELECT COUNT(*) FROM employees").fetchone()[0]:
                return False
            admin = self._default_admin()
            self._insert(conn, 'employees', EMPLOYEE_COLUMNS + ('password_hash',),
                         {**admin, 'password_hash': hash_password(DEFAULT_PASSWORD)})
            conn.execute("INSERT OR IGNORE INTO groups (name) VALUES (?)", (admin['group_name'],))
        return True

    def get_employees(self, group: Optional[str] = None) -> List[Dict]:
        if group is not None:
            return self._query(
                "SELECT * FROM employees WHERE group_name = ? ORDER BY last_name, first_name", (group,)
            )
        return self._query("SELECT * FROM employees ORDER BY last_name, first_name")

    def get_employee(self, emp_id: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM employees WHERE id = ?", (emp_id,))

    def get_employee_by_email(self, email: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM employees WHERE lower(email) = lower(?)", (email.strip(),))

    def _validate_employee(self, data: dict, partial: bool = False) -> None:
        for key in ('first_name', 'last_name', 'email'):
            if key in data or not partial:
                if not (data.get(key) or '').strip():
                    raise ValueError(f"INVALID:{key.upper()}:required")
        if 'email' in data and not _EMAIL_RE.match(data['email'].strip()):
            raise ValueError(f"INVALID:EMAIL:{data['email']}")
        if len((data.get('middle_initial') or '').strip()) > 1:
            raise ValueError("INVALID:MIDDLE_INITIAL:at most one character")
        if 'role' in data and data['role'] not in ROLES:
            raise ValueError(f"INVALID:ROLE:{data['role']}")

    def create_employee(self, data: dict) -> dict:
        self._validate_employee(data)
        record = {c: data.get(c) for c in EMPLOYEE_COLUMNS}
        record['id'] = data.get('id') or _new_id()
        record['email'] = data['email'].strip()
        record['role'] = data.get('role') or 'member'
        record['visibility'] = {**_DEFAULT_VISIBILITY, **(data.get('visibility') or {})}
        if record.get('load_limit_percentage') is None:
            record['load_limit_percentage'] = 150
        if self.get_employee_by_email(record['email']) is not None:
            raise ValueError(f"DUPLICATE:EMAIL:{record['email']}")
        record['password_hash'] = hash_password(data.get('password') or DEFAULT_PASSWORD)
        try:
            with self._tx() as conn:
                self._insert(conn, 'employees', EMPLOYEE_COLUMNS + ('password_hash',), record)
                if record.get('group_name'):
                    conn.execute("INSERT OR IGNORE INTO groups (name) VALUES (?)", (record['group_name'],))
        except sqlite3.IntegrityError:
            raise ValueError(f"DUPLICATE:EMAIL:{record['email']}")
        return self.get_employee(record['id'])

    def update_employee(self, emp_id: str, data: dict) -> dict:
        self._validate_employee(data, partial=True)
        if data.get('email'):
            other = self.get_employee_by_email(data['email'])
            if other is not None and other['id'] != emp_id:
                raise ValueError(f"DUPLICATE:EMAIL:{data['email']}")
        data = dict(data)
        password = data.pop('password', None)
        if 'visibility' in data and data['visibility'] is not None:
            data['visibility'] = {**_DEFAULT_VISIBILITY, **data['visibility']}
        try:
            with self._tx() as conn:
                count = self._update(conn, 'employees', EMPLOYEE_COLUMNS, emp_id, data)
                if count == 0:
                    raise ValueError(f"NOT_FOUND:EMPLOYEE:{emp_id}")
                if password:
                    conn.execute("UPDATE employees SET password_hash = ? WHERE id = ?",
                                 (hash_password(password), emp_id))
                if data.get('group_name'):
                    conn.execute("INSERT OR IGNORE INTO groups (name) VALUES (?)", (data['group_name'],))
        except sqlite3.IntegrityError:
            raise ValueError(f"DUPLICATE:EMAIL:{data.get('email')}")
        return self.get_employee(emp_id)

    def delete_employee(self, emp_id: str) -> int:
        """Delete an employee together with their shifts, leave, allowances and tardy records."""
        if emp_id == DEFAULT_ADMIN_ID:
            raise ValueError("PROTECTED:EMPLOYEE:default administrator")
        with self._tx() as conn:
            count = conn.execute("DELETE FROM employees WHERE id = ?", (emp_id,)).rowcount
            if count:
                for table in ('shifts', 'leave', 'leave_days', 'communication_allowances', 'tardy_records'):
                    conn.execute(f"DELETE FROM {table} WHERE employee_id = ?", (emp_id,))
                conn.execute("DELETE FROM tasks WHERE assignee_id = ?", (emp_id,))
                conn.execute("UPDATE employees SET reports_to = NULL WHERE reports_to = ?", (emp_id,))
        return count

    def verify_user_password(self, email: str, password: str) -> Optional[Dict]:
        """Return the employee record for valid credentials, else None."""
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE lower(email) = lower(?)", ((email or '').strip(),)
            ).fetchone()
        if row is None or not check_password(password, row['password_hash']):
            return None
        return _hydrate(row)

    def change_password(self, emp_id: str, new_password: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("UPDATE employees SET password_hash = ? WHERE id = ?",
                               (hash_password(new_password), emp_id))
        return cur.rowcount > 0

    # ── Groups ─────────────────────────────────────────────────
    def get_groups(self) -> List[str]:
        with self._tx() as conn:
            return [r['name'] for r in conn.execute("SELECT name FROM groups ORDER BY name")]

    def create_group(self, name: str) -> str:
        name = name.strip()
        try:
            with self._tx() as conn:
                conn.execute("INSERT INTO groups (name) VALUES (?)", (name,))
        except sqlite3.IntegrityError:
            raise ValueError(f"DUPLICATE:GROUP:{name}")
        return name

    def rename_group(self, old: str, new: str) -> int:
        new = new.strip()
        try:
            with self._tx() as conn:
                if conn.execute("DELETE FROM groups WHERE name = ?", (old,)).rowcount == 0:
                    raise ValueError(f"NOT_FOUND:GROUP:{old}")
                conn.execute("INSERT INTO groups (name) VALUES (?)", (new,))
                return conn.execute("UPDATE employees SET group_name = ? WHERE group_name = ?", (new, old)).rowcount
        except sqlite3.IntegrityError:
            raise ValueError(f"DUPLICATE:GROUP:{new}")

    def delete_group(self, name: str) -> int:
        """Remove a group; its members become ungrouped."""
        with self._tx() as conn:
            count = conn.execute("DELETE FROM groups WHERE name = ?", (name,)).rowcount
            conn.execute("UPDATE employees SET group_name = NULL WHERE group_name = ?", (name,))
        return count

    # ── Shifts ─────────────────────────────────────────────────
    def get_shifts(self, start: Optional[date] = None, end: Optional[date] = None,
                   employee_id: Optional[str] = None, group: Optional[str] = None) -> List[Dict]:
        sql = "SELECT s.* FROM shifts s"
        clauses, params = [], []
        if group is not None:
            sql += " JOIN employees e ON e.id = s.employee_id"
            clauses.append("e.group_name = ?")
            params.append(group)
        if start is not None:
            clauses.append("s.date >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("s.date <= ?")
            params.append(end.isoformat())
        if employee_id is not None:
            clauses.append("s.employee_id = ?")
            params.append(employee_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return self._query(sql + " ORDER BY s.date, s.start_time", params)

    def get_shift(self, shift_id: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM shifts WHERE id = ?", (shift_id,))

    def create_shift(self, data: dict) -> dict:
        record = {'status': 'draft', **data, 'id': data.get('id') or _new_id()}
        with self._tx() as conn:
            self._insert(conn, 'shifts', SHIFT_COLUMNS, record)
        return self.get_shift(record['id'])

    def update_shift(self, shift_id: str, data: dict) -> dict:
        with self._tx() as conn:
            if self._update(conn, 'shifts', SHIFT_COLUMNS, shift_id, data) == 0:
                raise ValueError(f"NOT_FOUND:SHIFT:{shift_id}")
        return self.get_shift(shift_id)

    def delete_shift(self, shift_id: str) -> int:
        with self._tx() as conn:
            count = conn.execute("DELETE FROM shifts WHERE id = ?", (shift_id,)).rowcount
            conn.execute("UPDATE tasks SET shift_id = NULL WHERE shift_id = ?", (shift_id,))
        return count

    def delete_cell(self, employee_id: str, day: date) -> int:
        """Remove every shift of an employee on one day."""
        with self._tx() as conn:
            return conn.execute(
                "DELETE FROM shifts WHERE employee_id = ? AND date = ?", (employee_id, day.isoformat())
            ).rowcount

    def publish_shifts(self, start: date, end: date, group: Optional[str] = None) -> int:
        sql = "UPDATE shifts SET status = 'published' WHERE status = 'draft' AND date >= ? AND date <= ?"
        params: list = [start.isoformat(), end.isoformat()]
        if group is not None:
            sql += " AND employee_id IN (SELECT id FROM employees WHERE group_name = ?)"
            params.append(group)
        with self._tx() as conn:
            return conn.execute(sql, params).rowcount

    def apply_schedule_import(self, overwritten_cells: List[tuple], shifts: List[dict], leave: List[dict],
                              month_key: str, employee_order: List[str]) -> Dict[str, int]:
        """Replace the imported cells with the parsed shifts and leave in one transaction."""
        with self._tx() as conn:
            for employee_id, day in overwritten_cells:
                iso = day.isoformat()
                conn.execute("DELETE FROM shifts WHERE employee_id = ? AND date = ?", (employee_id, iso))
                stale = [r['id'] for r in conn.execute(
                    "SELECT id FROM leave WHERE employee_id = ? AND start_date = ? AND end_date = ?",
                    (employee_id, iso, iso),
                )]
                for leave_id in stale:
                    conn.execute("DELETE FROM leave WHERE id = ?", (leave_id,))
                    conn.execute("DELETE FROM leave_days WHERE leave_id = ?", (leave_id,))
            for shift in shifts:
                self._insert(conn, 'shifts', SHIFT_COLUMNS, shift)
            for entry in leave:
                self._write_leave(conn, entry)
            if month_key:
                orders = self._get_json(conn, _EMPLOYEE_ORDER_KEY, {})
                orders[month_key] = employee_order
                self._set_json(conn, _EMPLOYEE_ORDER_KEY, orders)
        return {'shifts': len(shifts), 'leave': len(leave), 'cells': len(overwritten_cells)}

    # ── Shift templates ────────────────────────────────────────
    def get_shift_templates(self) -> List[Dict]:
        return self._query("SELECT * FROM shift_templates ORDER BY name")

    def get_shift_template(self, template_id: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM shift_templates WHERE id = ?", (template_id,))

    def create_shift_template(self, data: dict) -> dict:
        record = {**data, 'id': data.get('id') or _new_id()}
        with self._tx() as conn:
            self._insert(conn, 'shift_templates', SHIFT_TEMPLATE_COLUMNS, record)
        return self.get_shift_template(record['id'])

    def update_shift_template(self, template_id: str, data: dict) -> dict:
        with self._tx() as conn:
            if self._update(conn, 'shift_templates', SHIFT_TEMPLATE_COLUMNS, template_id, data) == 0:
                raise ValueError(f"NOT_FOUND:SHIFT_TEMPLATE:{template_id}")
        return self.get_shift_template(template_id)

    def delete_shift_template(self, template_id: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM shift_templates WHERE id = ?", (template_id,)).rowcount

    # ── Leave ──────────────────────────────────────────────────
    @staticmethod
    def _derive_leave_days(conn: sqlite3.Connection, record: dict) -> None:
        conn.execute("DELETE FROM leave_days WHERE leave_id = ?", (record['id'],))
        start = parse_date(record.get('start_date'))
        end = parse_date(record.get('end_date')) or start
        if start is None:
            return
        day = start
        while day <= end:
            conn.execute(
                "INSERT INTO leave_days (leave_id, employee_id, date) VALUES (?, ?, ?)",
                (record['id'], record['employee_id'], day.isoformat()),
            )
            day += timedelta(days=1)

    def _write_leave(self, conn: sqlite3.Connection, record: dict) -> None:
        record = dict(record)
        record['end_date'] = record.get('end_date') or record.get('start_date')
        self._insert(conn, 'leave', LEAVE_COLUMNS, record, conflict_key='id')
        self._derive_leave_days(conn, record)

    def get_leave(self, employee_id: Optional[str] = None, status: Optional[str] = None,
                  leave_type: Optional[str] = None, on_date: Optional[date] = None) -> List[Dict]:
        sql = "SELECT l.* FROM leave l"
        clauses, params = [], []
        if on_date is not None:
            sql += " JOIN leave_days d ON d.leave_id = l.id"
            clauses.append("d.date = ?")
            params.append(on_date.isoformat())
        if employee_id is not None:
            clauses.append("l.employee_id = ?")
            params.append(employee_id)
        if status is not None:
            clauses.append("l.status = ?")
            params.append(status)
        if leave_type is not None:
            clauses.append("l.type = ?")
            params.append(leave_type)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return self._query(sql + " ORDER BY l.start_date DESC, l.requested_at DESC", params)

    def get_leave_request(self, leave_id: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM leave WHERE id = ?", (leave_id,))

    def create_leave(self, data: dict) -> dict:
        record = {
            'status': 'pending',
            'is_all_day': True,
            'requested_at': _now_iso(),
            'date_filed': date.today(),
            **data,
            'id': data.get('id') or _new_id(),
        }
        with self._tx() as conn:
            self._write_leave(conn, record)
        return self.get_leave_request(record['id'])

    def update_leave(self, leave_id: str, data: dict) -> dict:
        existing = self.get_leave_request(leave_id)
        if existing is None:
            raise ValueError(f"NOT_FOUND:LEAVE:{leave_id}")
        merged = {**existing, **data, 'id': leave_id}
        with self._tx() as conn:
            self._write_leave(conn, merged)
        return self.get_leave_request(leave_id)

    def delete_leave(self, leave_id: str) -> int:
        with self._tx() as conn:
            conn.execute("DELETE FROM leave_days WHERE leave_id = ?", (leave_id,))
            return conn.execute("DELETE FROM leave WHERE id = ?", (leave_id,)).rowcount

    def delete_leave_by_type(self, leave_type: str) -> int:
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM leave_days WHERE leave_id IN (SELECT id FROM leave WHERE type = ?)", (leave_type,)
            )
            return conn.execute("DELETE FROM leave WHERE type = ?", (leave_type,)).rowcount

    # ── Leave types ────────────────────────────────────────────
    def get_leave_types(self) -> List[Dict]:
        return self._query("SELECT * FROM leave_types ORDER BY type")

    def create_leave_type(self, leave_type: str, color: str) -> dict:
        try:
            with self._tx() as conn:
                conn.execute("INSERT INTO leave_types (type, color) VALUES (?, ?)", (leave_type, color))
        except sqlite3.IntegrityError:
            raise ValueError(f"DUPLICATE:LEAVE_TYPE:{leave_type}")
        return {'type': leave_type, 'color': color}

    def update_leave_type(self, leave_type: str, color: str) -> dict:
        with self._tx() as conn:
            if conn.execute("UPDATE leave_types SET color = ? WHERE type = ?", (color, leave_type)).rowcount == 0:
                raise ValueError(f"NOT_FOUND:LEAVE_TYPE:{leave_type}")
        return {'type': leave_type, 'color': color}

    def delete_leave_type(self, leave_type: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM leave_types WHERE type = ?", (leave_type,)).rowcount

    def upsert_leave_types(self, items: List[dict]) -> int:
        with self._tx() as conn:
            for item in items:
                self._insert(conn, 'leave_types', ('type', 'color'), item, conflict_key='type')
        return len(items)

    # ── Holidays ───────────────────────────────────────────────
    def get_holidays(self, year: Optional[int] = None) -> List[Dict]:
        if year is not None:
            return self._query("SELECT * FROM holidays WHERE date LIKE ? ORDER BY date", (f"{year:04d}-%",))
        return self._query("SELECT * FROM holidays ORDER BY date")

    def create_holiday(self, data: dict) -> dict:
        record = {**data, 'id': data.get('id') or _new_id()}
        with self._tx() as conn:
            self._insert(conn, 'holidays', HOLIDAY_COLUMNS, record)
        return self._query_one("SELECT * FROM holidays WHERE id = ?", (record['id'],))

    def update_holiday(self, holiday_id: str, data: dict) -> dict:
        with self._tx() as conn:
            if self._update(conn, 'holidays', HOLIDAY_COLUMNS, holiday_id, data) == 0:
                raise ValueError(f"NOT_FOUND:HOLIDAY:{holiday_id}")
        return self._query_one("SELECT * FROM holidays WHERE id = ?", (holiday_id,))

    def delete_holiday(self, holiday_id: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM holidays WHERE id = ?", (holiday_id,)).rowcount

    # ── Notes ──────────────────────────────────────────────────
    def get_notes(self, start: Optional[date] = None, end: Optional[date] = None) -> List[Dict]:
        if start is not None and end is not None:
            return self._query(
                "SELECT * FROM notes WHERE date >= ? AND date <= ? ORDER BY date", (start.isoformat(), end.isoformat())
            )
        return self._query("SELECT * FROM notes ORDER BY date")

    def create_note(self, data: dict) -> dict:
        record = {**data, 'id': data.get('id') or _new_id()}
        with self._tx() as conn:
            self._insert(conn, 'notes', NOTE_COLUMNS, record)
        return self._query_one("SELECT * FROM notes WHERE id = ?", (record['id'],))

    def update_note(self, note_id: str, data: dict) -> dict:
        with self._tx() as conn:
            if self._update(conn, 'notes', NOTE_COLUMNS, note_id, data) == 0:
                raise ValueError(f"NOT_FOUND:NOTE:{note_id}")
        return self._query_one("SELECT * FROM notes WHERE id = ?", (note_id,))

    def delete_note(self, note_id: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM notes WHERE id = ?", (note_id,)).rowcount

    # ── Tasks ──────────────────────────────────────────────────
    def get_tasks(self, assignee_id: Optional[str] = None, shift_id: Optional[str] = None,
                  status: Optional[str] = None) -> List[Dict]:
        clauses, params = [], []
        for column, value in (('assignee_id', assignee_id), ('shift_id', shift_id), ('status', status)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return self._query(sql + " ORDER BY due_date, title", params)

    def get_task(self, task_id: str) -> Optional[Dict]:
        return self._query_one("SELECT * FROM tasks WHERE id = ?", (task_id,))

    def create_task(self, data: dict) -> dict:
        record = {'status': 'pending', 'scope': 'shift', **data, 'id': data.get('id') or _new_id()}
        with self._tx() as conn:
            self._insert(conn, 'tasks', TASK_COLUMNS, record)
        return self.get_task(record['id'])

    def update_task(self, task_id: str, data: dict) -> dict:
        with self._tx() as conn:
            if self._update(conn, 'tasks', TASK_COLUMNS, task_id, data) == 0:
                raise ValueError(f"NOT_FOUND:TASK:{task_id}")
        return self.get_task(task_id)

    def toggle_task(self, task_id: str) -> dict:
        """Flip pending <-> completed, stamping or clearing ``completed_at``."""
        task = self.get_task(task_id)
        if task is None:
            raise ValueError(f"NOT_FOUND:TASK:{task_id}")
        if task['status'] == 'completed':
            return self.update_task(task_id, {'status': 'pending', 'completed_at': None})
        return self.update_task(task_id, {'status': 'completed', 'completed_at': _now_iso()})

    def delete_task(self, task_id: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,)).rowcount

    # ── Communication allowances ───────────────────────────────
    def get_allowances(self, year: Optional[int] = None, month: Optional[int] = None) -> List[Dict]:
        if year is not None and month is not None:
            return self._query(
                "SELECT * FROM communication_allowances WHERE year = ? AND month = ?", (year, month)
            )
        return self._query("SELECT * FROM communication_allowances ORDER BY year, month")

    def upsert_allowance(self, employee_id: str, year: int, month: int, balance: float,
                         as_of_date: Optional[date] = None, screenshot: Optional[str] = None) -> dict:
        record = {
            'id': allowance_id(employee_id, year, month),
            'employee_id': employee_id,
            'year': year,
            'month': month,
            'balance': balance,
            'as_of_date': as_of_date,
            'screenshot': screenshot,
        }
        with self._tx() as conn:
            self._insert(conn, 'communication_allowances', ALLOWANCE_COLUMNS, record, conflict_key='id')
        return self._query_one("SELECT * FROM communication_allowances WHERE id = ?", (record['id'],))

    def delete_allowance(self, record_id: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM communication_allowances WHERE id = ?", (record_id,)).rowcount

    # ── Tardy records ──────────────────────────────────────────
    def get_tardy_records(self, start: Optional[date] = None, end: Optional[date] = None) -> List[Dict]:
        if start is not None and end is not None:
            return self._query(
                "SELECT * FROM tardy_records WHERE date >= ? AND date <= ? ORDER BY date",
                (start.isoformat(), end.isoformat()),
            )
        return self._query("SELECT * FROM tardy_records ORDER BY date")

    def add_tardy_records(self, records: List[dict]) -> int:
        with self._tx() as conn:
            for rec in records:
                self._insert(conn, 'tardy_records', TARDY_COLUMNS, {**rec, 'id': rec.get('id') or _new_id()})
        return len(records)

    def clear_tardy_records(self) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM tardy_records").rowcount

    # ── Key/value store: templates, settings, employee order ───
    @staticmethod
    def _get_json(conn: sqlite3.Connection, key: str, default: Any) -> Any:
        row = conn.execute("SELECT value FROM key_value_store WHERE key = ?", (key,)).fetchone()
        if row is None or row['value'] is None:
            return default
        try:
            return json.loads(row['value'])
        except ValueError:
            return default

    @staticmethod
    def _set_json(conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT INTO key_value_store (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(value)),
        )

    def get_json(self, key: str, default: Any = None) -> Any:
        with self._tx() as conn:
            return self._get_json(conn, key, default)

    def set_json(self, key: str, value: Any) -> None:
        with self._tx() as conn:
            self._set_json(conn, key, value)

    def get_template(self, key: str) -> Optional[bytes]:
        with self._tx() as conn:
            row = conn.execute("SELECT value FROM key_value_store WHERE key = ?", (key,)).fetchone()
        if row is None or not row['value']:
            return None
        return base64.b64decode(row['value'])

    def set_template(self, key: str, content: bytes) -> None:
        if key not in TEMPLATE_KEYS:
            raise ValueError(f"NOT_FOUND:TEMPLATE:{key}")
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO key_value_store (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, base64.b64encode(content).decode('ascii')),
            )

    def delete_template(self, key: str) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM key_value_store WHERE key = ?", (key,)).rowcount

    def list_templates(self) -> Dict[str, bool]:
        with self._tx() as conn:
            present = {r['key'] for r in conn.execute("SELECT key FROM key_value_store WHERE value IS NOT NULL")}
        return {k: k in present for k in TEMPLATE_KEYS}

    def get_employee_order(self, month_key: str) -> List[str]:
        return self.get_json(_EMPLOYEE_ORDER_KEY, {}).get(month_key, [])

    def set_employee_order(self, month_key: str, employee_ids: List[str]) -> None:
        with self._tx() as conn:
            orders = self._get_json(conn, _EMPLOYEE_ORDER_KEY, {})
            orders[month_key] = list(employee_ids)
            self._set_json(conn, _EMPLOYEE_ORDER_KEY, orders)

    # ── Permissions ────────────────────────────────────────────
    def get_permissions(self) -> Dict[str, List[str]]:
        result = {role: [] for role in ROLES}
        with self._tx() as conn:
            for row in conn.execute("SELECT role, allowed_views FROM permissions"):
                result[row['role']] = json.loads(row['allowed_views'])
        return result

    def set_permissions(self, role: str, views: List[str]) -> List[str]:
        if role not in ROLES:
            raise ValueError(f"INVALID:ROLE:{role}")
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO permissions (role, allowed_views) VALUES (?, ?) "
                "ON CONFLICT(role) DO UPDATE SET allowed_views = excluded.allowed_views",
                (role, json.dumps(views)),
            )
        return views

    # ── SMTP settings ──────────────────────────────────────────
    def get_smtp_settings(self) -> Dict[str, Any]:
        row = self._query_one("SELECT * FROM smtp_settings WHERE id = 1")
        if row is None:
            return {c: None for c in SMTP_COLUMNS}
        row.pop('id', None)
        return row

    def set_smtp_settings(self, data: dict) -> Dict[str, Any]:
        current = self.get_smtp_settings()
        merged = {**current, **{k: v for k, v in data.items() if k in SMTP_COLUMNS}}
        if not data.get('password'):
            merged['password'] = current.get('password')
        with self._tx() as conn:
            self._insert(conn, 'smtp_settings', ('id',) + SMTP_COLUMNS, {**merged, 'id': 1}, conflict_key='id')
        return self.get_smtp_settings()

    # ── Fetch / save boundary ──────────────────────────────────
    def fetch_all(self) -> Dict[str, Any]:
        """Load every domain collection, hydrated for in-memory use."""
        with self._tx() as conn:
            def rows(sql):
                return [_hydrate(r) for r in conn.execute(sql).fetchall()]

            employees = rows("SELECT * FROM employees ORDER BY last_name, first_name")
            data = {
                'employees': employees or [self._default_admin()],
                'shifts': rows("SELECT * FROM shifts ORDER BY date"),
                'leave': rows("SELECT * FROM leave ORDER BY start_date"),
                'notes': rows("SELECT * FROM notes ORDER BY date"),
                'holidays': rows("SELECT * FROM holidays ORDER BY date"),
                'tasks': rows("SELECT * FROM tasks"),
                'allowances': rows("SELECT * FROM communication_allowances"),
                'groups': [r['name'] for r in conn.execute("SELECT name FROM groups ORDER BY name")],
                'tardy_records': rows("SELECT * FROM tardy_records ORDER BY date"),
                'shift_templates': rows("SELECT * FROM shift_templates ORDER BY name"),
                'leave_types': rows("SELECT * FROM leave_types ORDER BY type"),
                'monthly_employee_order': self._get_json(conn, _EMPLOYEE_ORDER_KEY, {}),
                'templates': {},
            }
            for key in TEMPLATE_KEYS:
                row = conn.execute("SELECT value FROM key_value_store WHERE key = ?", (key,)).fetchone()
                data['templates'][key] = row['value'] if row else None
        data['permissions'] = self.get_permissions()
        smtp = self.get_smtp_settings()
        smtp['password'] = None
        data['smtp_settings'] = smtp
        return data

    def save_all(self, state: Dict[str, Any]) -> None:
        """Persist a full state snapshot in a single transaction."""
        with self._tx() as conn:
            # Employees: delete the ones missing from the state, upsert the rest.
            wanted = {e['id'] for e in state.get('employees', [])}
            existing = {r['id'] for r in conn.execute("SELECT id FROM employees")}
            for emp_id in existing - wanted - {DEFAULT_ADMIN_ID}:
                conn.execute("DELETE FROM employees WHERE id = ?", (emp_id,))
            for emp in state.get('employees', []):
                if emp['id'] in existing:
                    self._update(conn, 'employees', EMPLOYEE_COLUMNS, emp['id'], emp)
                else:
                    self._insert(conn, 'employees', EMPLOYEE_COLUMNS + ('password_hash',),
                                 {**emp, 'password_hash': hash_password(emp.get('password') or DEFAULT_PASSWORD)})

            if 'groups' in state:
                current = {r['name'] for r in conn.execute("SELECT name FROM groups")}
                target = set(state['groups'])
                for name in target - current:
                    conn.execute("INSERT INTO groups (name) VALUES (?)", (name,))
                for name in current - target:
                    conn.execute("UPDATE employees SET group_name = NULL WHERE group_name = ?", (name,))
                    conn.execute("DELETE FROM groups WHERE name = ?", (name,))

            replaced = (
                ('shifts', SHIFT_COLUMNS, 'shifts'),
                ('notes', NOTE_COLUMNS, 'notes'),
                ('holidays', HOLIDAY_COLUMNS, 'holidays'),
                ('tasks', TASK_COLUMNS, 'tasks'),
                ('communication_allowances', ALLOWANCE_COLUMNS, 'allowances'),
                ('tardy_records', TARDY_COLUMNS, 'tardy_records'),
                ('shift_templates', SHIFT_TEMPLATE_COLUMNS, 'shift_templates'),
                ('leave_types', ('type', 'color'), 'leave_types'),
            )
            for table, columns, key in replaced:
                if key not in state:
                    continue
                conn.execute(f"DELETE FROM {table}")
                for rec in state[key]:
                    if 'id' in columns and not rec.get('id'):
                        rec = {**rec, 'id': _new_id()}
                    self._insert(conn, table, columns, rec)

            if 'leave' in state:
                keep = {l['id'] for l in state['leave'] if l.get('id')}
                for row in conn.execute("SELECT id FROM leave").fetchall():
                    if row['id'] not in keep:
                        conn.execute("DELETE FROM leave WHERE id = ?", (row['id'],))
                conn.execute("DELETE FROM leave_days")
                for entry in state['leave']:
                    self._write_leave(conn, {**entry, 'id': entry.get('id') or _new_id()})

            for key, value in (state.get('templates') or {}).items():
                if value and key in TEMPLATE_KEYS:
                    conn.execute(
                        "INSERT INTO key_value_store (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (key, value),
                    )
            if 'monthly_employee_order' in state:
                self._set_json(conn, _EMPLOYEE_ORDER_KEY, state['monthly_employee_order'])

            for role, views in (state.get('permissions') or {}).items():
                conn.execute(
                    "INSERT INTO permissions (role, allowed_views) VALUES (?, ?) "
                    "ON CONFLICT(role) DO UPDATE SET allowed_views = excluded.allowed_views",
                    (role, json.dumps(views)),
                )

            smtp = state.get('smtp_settings') or {}
            if smtp.get('host'):
                row = conn.execute("SELECT password FROM smtp_settings WHERE id = 1").fetchone()
                if not smtp.get('password') and row is not None:
                    smtp = {**smtp, 'password': row['password']}
                self._insert(conn, 'smtp_settings', ('id',) + SMTP_COLUMNS, {**smtp, 'id': 1}, conflict_key='id')

    # ── Admin ──────────────────────────────────────────────────
    def backup_to(self, dest_path: str) -> str:
        """Write a consistent copy of the database using SQLite's online backup."""
        src = self._connect()
        dst = sqlite3.connect(dest_path)
        try:
            src.backup(dst)
        finally:
            dst.close()
            src.close()
        return dest_path

    def reset_all(self) -> None:
        """Danger zone: wipe all data, keep only the default administrator."""
        with self._tx() as conn:
            for table in ('shifts', 'leave', 'leave_days', 'notes', 'holidays', 'tasks',
                          'communication_allowances', 'tardy_records', 'shift_templates',
                          'leave_types', 'key_value_store', 'permissions', 'smtp_settings', 'groups'):
                conn.execute(f"DELETE FROM {table}")
            conn.execute("DELETE FROM employees WHERE id != ?", (DEFAULT_ADMIN_ID,))
        self._seed_defaults()
        self.ensure_default_admin()
