"""Employee name formatting and lookup."""
import re
from typing import Iterable, Optional

_WS_RE = re.compile(r'\s+')


def full_name(employee: Optional[dict]) -> str:
    """``First [MI] Last`` with empty parts dropped."""
    if not employee:
        return ''
    parts = [employee.get('first_name'), employee.get('middle_initial'), employee.get('last_name')]
    return ' '.join(p.strip() for p in parts if p and p.strip())


def surname_first(employee: dict) -> str:
    """``LAST, FIRST MI`` as printed on payroll forms."""
    first = ' '.join(p for p in (employee.get('first_name') or '', employee.get('middle_initial') or '') if p)
    return f"{employee.get('last_name') or ''}, {first}".strip().upper()


def normalize_name(name: str) -> str:
    if not name:
        return ''
    return _WS_RE.sub(' ', name.strip().lower().replace(',', '')).strip()


def find_employee_by_name(name: str, employees: Iterable[dict]) -> Optional[dict]:
    """Resolve a free-text name to an employee record.

    Tries an exact ``first last`` / ``first mi last`` match, then
    ``Last, First…`` where the part after the comma must start with the
    employee's first name. No fuzzy matching.
    """
    if not name or not isinstance(name, str):
        return None
    employees = list(employees)
    wanted = normalize_name(name)

    for emp in employees:
        plain = normalize_name(f"{emp.get('first_name') or ''} {emp.get('last_name') or ''}")
        with_mi = normalize_name(
            f"{emp.get('first_name') or ''} {emp.get('middle_initial') or ''} {emp.get('last_name') or ''}"
        )
        if wanted in (plain, with_mi):
            return emp

    if ',' in name:
        last_part, _, first_part = name.partition(',')
        last_part = normalize_name(last_part)
        first_part = normalize_name(first_part)
        for emp in employees:
            emp_first = normalize_name(emp.get('first_name') or '')
            if normalize_name(emp.get('last_name') or '') == last_part and emp_first and first_part.startswith(emp_first):
                return emp
    return None
