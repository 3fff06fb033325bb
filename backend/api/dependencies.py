"""
Shared dependencies for the OnDuty API.
Logging, rate limiting, the session store and role checks used by every router.
"""
import os
import logging
import logging.handlers
import time as _time
import traceback

from fastapi import HTTPException, Header, Depends, Request
from typing import Optional
from ondutylib.database import OnDutyDatabase
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Structured JSON Logging setup ───────────────────────────────
import json as _json
from datetime import datetime as _dt, timezone as _tz


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return _json.dumps(entry, ensure_ascii=False)


_log_file = os.environ.get('ONDUTY_LOG_FILE', '/tmp/onduty-api.log')
_handler = logging.handlers.RotatingFileHandler(
    _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
)
_handler.setFormatter(_JsonFormatter())

_logger = logging.getLogger('onduty')
# Log level configurable via ENV
_log_level_str = os.environ.get('ONDUTY_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
_logger.setLevel(_log_level)
_logger.addHandler(_handler)
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())
_logger.addHandler(_stderr_handler)

ONDUTY_LOG_FILE = _log_file

# ── Rate Limiter ─────────────────────────────────────────────────
_RATE_LIMIT_ENABLED = os.environ.get('ONDUTY_RATE_LIMIT', '1').lower() not in ('0', 'false', 'no')
limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"], enabled=_RATE_LIMIT_ENABLED)

# ── Session store ────────────────────────────────────────────────
# In-process dict, so a single worker only.
_sessions: dict[str, dict] = {}

_TOKEN_EXPIRE_HOURS = float(os.environ.get('TOKEN_EXPIRE_HOURS', '8'))

# Max concurrent sessions per user
_MAX_SESSIONS_PER_USER = int(os.environ.get('MAX_SESSIONS_PER_USER', '10'))

# Brute-force tracking (keyed by lower-cased email)
_failed_logins: dict[str, list] = {}
_LOCKOUT_WINDOW = 15 * 60
_LOCKOUT_MAX = 5

# Role hierarchy
_ROLE_LEVEL = {'member': 1, 'manager': 2, 'admin': 3}

WORK_EXTENSION_EXPIRY_DAYS = int(os.environ.get('WORK_EXTENSION_EXPIRY_DAYS', '30'))


def _is_token_valid(token: str) -> bool:
    """Return True if the token exists and has not expired."""
    session = _sessions.get(token)
    if not session:
        return False
    expires_at = session.get('expires_at')
    if expires_at is not None and _time.time() > expires_at:
        del _sessions[token]
        return False
    return True


def get_current_user(
    request: Request,
    x_auth_token: Optional[str] = Header(None),
) -> Optional[dict]:
    """Return the session for the given token, or None.

    Reads from X-Auth-Token header first; falls back to ?token= query param
    for SSE connections where EventSource cannot set custom headers.
    """
    token = x_auth_token or request.query_params.get('token')
    if token and _is_token_valid(token):
        return _sessions[token]
    return None


def require_auth(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires any authenticated user."""
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires the admin role."""
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if user.get('role') != 'admin':
        raise HTTPException(status_code=403, detail="Admin permission required")
    return user


def require_manager(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires at least the manager role."""
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if _ROLE_LEVEL.get(user.get('role', 'member'), 1) < 2:
        raise HTTPException(status_code=403, detail="Role 'manager' required")
    return user


def is_manager(user: dict) -> bool:
    return _ROLE_LEVEL.get(user.get('role', 'member'), 1) >= 2


def get_db() -> OnDutyDatabase:
    """Get a database handle using the current DB_PATH from main module."""
    import api.main as _main
    return OnDutyDatabase(_main.DB_PATH)


def invalidate_sessions_for_user(user_id: str) -> int:
    """Remove all active sessions for a given employee id. Returns count removed."""
    to_remove = [tok for tok, s in _sessions.items() if s.get('id') == user_id]
    for tok in to_remove:
        del _sessions[tok]
    return len(to_remove)


def refresh_sessions_for_user(user: dict) -> None:
    """Copy changed profile fields (role, group, name) into the user's live sessions."""
    for s in _sessions.values():
        if s.get('id') == user.get('id'):
            for key in ('role', 'group_name', 'first_name', 'last_name', 'email'):
                s[key] = user.get(key)


def purge_expired_sessions() -> int:
    """Remove all expired sessions from the in-memory store. Returns count removed."""
    now = _time.time()
    to_remove = [
        tok for tok, s in list(_sessions.items())
        if s.get('expires_at') is not None and now > s['expires_at']
    ]
    for tok in to_remove:
        _sessions.pop(tok, None)
    return len(to_remove)


def purge_stale_failed_logins() -> int:
    """Remove email entries whose timestamps have all expired. Returns count removed."""
    now = _time.time()
    stale = [
        email for email, timestamps in list(_failed_logins.items())
        if not any(now - t < _LOCKOUT_WINDOW for t in timestamps)
    ]
    for email in stale:
        _failed_logins.pop(email, None)
    return len(stale)


def raise_for_value_error(e: ValueError) -> HTTPException:
    """Translate coded ``ValueError`` messages from ondutylib into HTTP errors."""
    msg = str(e)
    code, _, rest = msg.partition(':')
    if code == 'DUPLICATE':
        entity, _, value = rest.partition(':')
        if entity == 'EMAIL':
            return HTTPException(status_code=409, detail="Another user is already using this email address.")
        return HTTPException(status_code=409, detail=f"{entity.replace('_', ' ').title()} '{value}' already exists")
    if code == 'NOT_FOUND':
        entity, _, value = rest.partition(':')
        return HTTPException(status_code=404, detail=f"{entity.replace('_', ' ').title()} '{value}' not found")
    if code == 'PROTECTED':
        return HTTPException(status_code=403, detail=f"The {rest.split(':', 1)[-1]} cannot be changed this way")
    if code == 'INVALID':
        field, _, reason = rest.partition(':')
        return HTTPException(status_code=400, detail=f"Invalid {field.lower()}: {reason}")
    return HTTPException(status_code=400, detail=msg)


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log full exception, return sanitized 500."""
    _logger.error(
        "500 error context=%s type=%s msg=%s trace=%s",
        context, type(e).__name__, str(e),
        traceback.format_exc().splitlines()[-1],
    )
    return HTTPException(
        status_code=500,
        detail="Internal server error. Please try again.",
    )
