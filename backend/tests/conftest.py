"""
Shared test fixtures for the OnDuty backend tests.
"""
import os
import sys
import base64
import tempfile
from io import BytesIO

import pytest

# ── Environment (must be set before api.main is imported) ──────────────────────
os.environ.setdefault('ONDUTY_RATE_LIMIT', '0')
os.environ.setdefault('ONDUTY_LOG_FILE', os.path.join(tempfile.gettempdir(), 'onduty-tests.log'))
os.environ.setdefault('ONDUTY_LOG_LEVEL', 'WARNING')

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

ADMIN_EMAIL = 'admin@onduty.local'
MANAGER_EMAIL = 'manager@onduty.local'
MEMBER_EMAIL = 'member@onduty.local'
PASSWORD = 'password'


# ── Database ───────────────────────────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path):
    """Function-scoped: a fresh SQLite file per test, wired into api.main."""
    import api.main as main_module
    from api.dependencies import _sessions, _failed_logins
    path = str(tmp_path / 'onduty.db')
    original = main_module.DB_PATH
    main_module.DB_PATH = path
    _sessions.clear()
    _failed_logins.clear()
    yield path
    main_module.DB_PATH = original
    _sessions.clear()
    _failed_logins.clear()


@pytest.fixture
def db(db_path):
    """Seeded database: default admin, one manager and one member in group Support."""
    from ondutylib.database import OnDutyDatabase
    database = OnDutyDatabase(db_path)
    database.ensure_default_admin()
    manager = database.create_employee({
        'id': 'emp-manager',
        'first_name': 'Maria', 'last_name': 'Santos', 'email': MANAGER_EMAIL,
        'role': 'manager', 'group_name': 'Support', 'position': 'Team Lead',
        'employee_classification': 'Managerial', 'personnel_number': 'P-100',
    })
    database.create_employee({
        'id': 'emp-member',
        'first_name': 'Charlie', 'last_name': 'Brown', 'middle_initial': 'J', 'email': MEMBER_EMAIL,
        'role': 'member', 'group_name': 'Support', 'position': 'Agent',
        'reports_to': manager['id'], 'employee_classification': 'Rank-and-File',
        'personnel_number': 'P-200', 'load_allocation': 1000, 'birth_date': '1990-04-02',
    })
    return database


# ── Clients ────────────────────────────────────────────────────────────────────

@pytest.fixture
def app(db):
    from api.main import app as _app
    return _app


def login(client, email: str, password: str = PASSWORD) -> str:
    """Log in through the API and set the token header on ``client``."""
    res = client.post('/api/auth/login', json={'email': email, 'password': password})
    assert res.status_code == 200, res.text
    token = res.json()['token']
    client.headers['x-auth-token'] = token
    return token


def _client(app, email=None):
    from starlette.testclient import TestClient
    client = TestClient(app, raise_server_exceptions=False)
    client.__enter__()
    if email:
        login(client, email)
    return client


@pytest.fixture
def anon_client(app):
    client = _client(app)
    yield client
    client.__exit__(None, None, None)


@pytest.fixture
def admin_client(app):
    client = _client(app, ADMIN_EMAIL)
    yield client
    client.__exit__(None, None, None)


@pytest.fixture
def manager_client(app):
    client = _client(app, MANAGER_EMAIL)
    yield client
    client.__exit__(None, None, None)


@pytest.fixture
def member_client(app):
    client = _client(app, MEMBER_EMAIL)
    yield client
    client.__exit__(None, None, None)


# ── File factories ─────────────────────────────────────────────────────────────

def make_xlsx(rows, heights=None, merges=None, bold_cells=None) -> bytes:
    """Build a workbook from a list of row lists; returns the .xlsx bytes."""
    from openpyxl import Workbook
    from openpyxl.styles import Font
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    for r, h in (heights or {}).items():
        ws.row_dimensions[r].height = h
    for rng in merges or []:
        ws.merge_cells(rng)
    for coord in bold_cells or []:
        ws[coord].font = Font(bold=True)
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def load_xlsx(content: bytes):
    from openpyxl import load_workbook
    return load_workbook(BytesIO(content)).worksheets[0]


def sheet_values(ws):
    return [list(r) for r in ws.iter_rows(values_only=True)]


def make_signature() -> str:
    """A tiny PNG signature as a data URI."""
    from PIL import Image
    buf = BytesIO()
    Image.new('RGBA', (20, 8), (0, 0, 0, 255)).save(buf, format='PNG')
    return 'data:image/png;base64,' + base64.b64encode(buf.getvalue()).decode('ascii')


@pytest.fixture
def xlsx_factory():
    return make_xlsx


@pytest.fixture
def signature_png():
    return make_signature()
