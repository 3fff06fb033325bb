"""FastAPI application for OnDuty."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402

# These are re-exported here so tests can do `from api.main import _sessions`
from .dependencies import (  # noqa: E402
    _sessions,
    _failed_logins,
    _is_token_valid,
    get_db,
    _logger,
    limiter,
    purge_expired_sessions,
    purge_stale_failed_logins,
)

# ── Config ──────────────────────────────────────────────────────
DB_PATH = os.environ.get(
    'ONDUTY_DB_PATH',
    os.path.join(os.path.dirname(__file__), '..', 'onduty.db')
)
DB_PATH = os.path.normpath(DB_PATH)

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    if _raw_origins
    else ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"]
)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Auth", "description": "Authentication: login, logout, current user"},
    {"name": "Employees", "description": "Team roster and profiles"},
    {"name": "Groups", "description": "Employee groups"},
    {"name": "Schedule", "description": "Shifts, shift templates and monthly employee order"},
    {"name": "Leave", "description": "Leave requests, work extensions and leave types"},
    {"name": "Master Data", "description": "Holidays, notes, tasks and communication allowances"},
    {"name": "Reports", "description": "Report templates, previews, downloads and email"},
    {"name": "Import", "description": "CSV import endpoints"},
    {"name": "Export", "description": "CSV export endpoints"},
    {"name": "Admin", "description": "Permissions, SMTP settings, backup and reset (admin only)"},
    {"name": "Events", "description": "Server-sent change notifications"},
]


async def _periodic_cleanup():
    """Background task: purge expired sessions and stale failed-login entries every 5 minutes."""
    import asyncio
    while True:
        await asyncio.sleep(300)
        try:
            sess = purge_expired_sessions()
            logins = purge_stale_failed_logins()
            if sess or logins:
                _logger.debug("Periodic cleanup: removed %d expired sessions, %d stale lockout entries", sess, logins)
        except Exception as _exc:  # pragma: no cover
            _logger.warning("Periodic cleanup error: %s", _exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import asyncio
    if get_db().ensure_default_admin():
        _logger.warning("Empty roster: created default administrator admin@onduty.local")
    cleanup_task = asyncio.create_task(_periodic_cleanup())
    yield
    cleanup_task.cancel()
    _logger.info("OnDuty API shutting down")


app = FastAPI(
    lifespan=lifespan,
    title="OnDuty API",
    description=(
        "Shift scheduling and leave management API.\n\n"
        "## Authentication\n"
        "Most endpoints require an `x-auth-token` header obtained from `POST /api/auth/login`.\n\n"
        "## Roles\n"
        "- **member** – own schedule, requests and tasks\n"
        "- **manager** – schedules, approvals, reports and imports\n"
        "- **admin** – full access including users, permissions and SMTP settings\n"
    ),
    version="1.2.0",
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "x-auth-token", "Authorization"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; frame-ancestors 'none';"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    if os.environ.get('ONDUTY_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Flatten Pydantic validation errors into one readable message."""
    _TYPE_MSGS = {
        "missing": "field required",
        "int_parsing": "must be an integer",
        "float_parsing": "must be a number",
        "bool_parsing": "must be true or false",
        "date_from_datetime_parsing": "must be a date (YYYY-MM-DD)",
        "date_parsing": "must be a date (YYYY-MM-DD)",
        "string_too_short": "too short",
        "string_too_long": "too long",
        "string_pattern_mismatch": "invalid format",
        "literal_error": "not an allowed value",
    }
    errors = []
    for e in exc.errors():
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        etype = e.get("type", "")
        msg = _TYPE_MSGS.get(etype, e.get("msg", "invalid value"))
        errors.append(f"{field}: {msg}" if field else msg)
    detail = "; ".join(errors) if errors else "Invalid input"
    return JSONResponse(status_code=422, content={"detail": detail})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    _logger.error(
        "Unhandled exception: %s %s | %s: %s",
        request.method, request.url.path, type(exc).__name__, exc,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error. Please try again."},
    )


# ── Public paths (no auth required) ────────────────────────────
_PUBLIC_PATHS = {'/api/auth/login', '/api/auth/logout', '/api', '/api/health', '/api/version', '/'}


def _session_user(token: str) -> str:
    return _sessions.get(token, {}).get('email', '-') if token else '-'


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    """Require authentication for all /api/* endpoints except public ones."""
    path = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else 'unknown'

    if path in _PUBLIC_PATHS or not path.startswith('/api/') or method == 'OPTIONS':
        return await call_next(request)
    # SSE endpoint also accepts token as query param (EventSource doesn't support headers)
    token = request.headers.get('x-auth-token') or request.query_params.get('token')
    if not token or not _is_token_valid(token):
        _logger.warning("AUTH 401 | ip=%s method=%s path=%s", client_ip, method, path)
        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
    response = await call_next(request)
    if response.status_code == 403:
        _logger.warning(
            "AUTH 403 | ip=%s method=%s path=%s user=%s",
            client_ip, method, path, _session_user(token),
        )
    if method in ('POST', 'PUT', 'PATCH', 'DELETE') and response.status_code < 400:
        _logger.info("AUDIT %s | ip=%s path=%s user=%s", method, client_ip, path, _session_user(token))
    return response


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    token = request.headers.get('x-auth-token') or request.query_params.get('token')
    entry = {
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "user": _session_user(token),
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


# ── Include routers ─────────────────────────────────────────────
from .routers import auth, employees, schedule, leave, master_data, reports, imports, admin, events  # noqa: E402

app.include_router(auth.router)
app.include_router(employees.router)
app.include_router(schedule.router)
app.include_router(leave.router)
app.include_router(master_data.router)
app.include_router(reports.router)
app.include_router(imports.router)
app.include_router(admin.router)
app.include_router(events.router)


# ── Routes ──────────────────────────────────────────────────────

_API_VERSION = "1.2.0"


@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description=(
        "Returns service status, API version, uptime in seconds, and DB state. "
        "This endpoint is public (no authentication required)."
    ),
)
def health():
    import sqlite3
    import time as _t
    db_status = "connected"
    try:
        get_db().get_stats()
    except sqlite3.Error as e:
        _logger.error("Health check: database unavailable: %s", e)
        db_status = "error"
    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_t.time() - _APP_START_TIME, 1),
        "db": {"status": db_status},
    }


@app.get("/api/version", tags=["Health"], summary="API version")
def version():
    """Return current API version (public)."""
    return {"version": _API_VERSION, "service": "OnDuty API"}


@app.get("/api", tags=["Health"], summary="API root", description="Returns basic service info.")
def root():
    return {"service": "OnDuty API", "version": _API_VERSION, "backend": "sqlite"}


@app.get("/api/stats", tags=["Health"], summary="Database statistics")
def get_stats():
    return get_db().get_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.environ.get('ONDUTY_PORT', '8000')), reload=True)
