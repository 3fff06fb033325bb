"""Authentication router: login, logout, current user, own password."""
import time as _time
import secrets
from fastapi import APIRouter, HTTPException, Header, Depends, Request
from pydantic import BaseModel, Field
from typing import Optional
from ..dependencies import (
    get_db, require_auth, _logger, _sessions, _failed_logins, _LOCKOUT_WINDOW,
    _LOCKOUT_MAX, _TOKEN_EXPIRE_HOURS, _MAX_SESSIONS_PER_USER, limiter, invalidate_sessions_for_user,
)

router = APIRouter()


class LoginBody(BaseModel):
    email: str
    password: str


class ChangePasswordBody(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=1)


def _trim_sessions(user_id: str) -> None:
    """Keep at most _MAX_SESSIONS_PER_USER sessions per user, dropping the oldest."""
    own = sorted(
        ((tok, s) for tok, s in _sessions.items() if s.get('id') == user_id),
        key=lambda item: item[1].get('created_at', 0),
    )
    for tok, _s in own[:max(0, len(own) - _MAX_SESSIONS_PER_USER + 1)]:
        _sessions.pop(tok, None)


@router.post("/api/auth/login", tags=["Auth"], summary="Login", description="Authenticate with email and password. Returns a session token valid for 8 hours (configurable via TOKEN_EXPIRE_HOURS).")
@limiter.limit("5/minute")
def login(request: Request, body: LoginBody):
    client_ip = request.client.host if request.client else 'unknown'
    now = _time.time()
    key = body.email.strip().lower()

    # ── Brute-force check ──────────────────────────────────────
    timestamps = [t for t in _failed_logins.get(key, []) if now - t < _LOCKOUT_WINDOW]
    _failed_logins[key] = timestamps
    if len(timestamps) >= _LOCKOUT_MAX:
        _logger.warning("AUTH LOCKOUT | ip=%s email=%s attempts=%d", client_ip, key, len(timestamps))
        raise HTTPException(status_code=429, detail="Too many failed attempts. Please wait 15 minutes.")

    user = get_db().verify_user_password(body.email, body.password)
    if user is None:
        _failed_logins[key] = timestamps + [now]
        _logger.warning("AUTH LOGIN_FAIL | ip=%s email=%s", client_ip, key)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    _failed_logins.pop(key, None)
    _logger.info("AUTH LOGIN_OK | ip=%s email=%s", client_ip, key)

    _trim_sessions(user['id'])
    token = secrets.token_hex(32)
    expires_at = now + _TOKEN_EXPIRE_HOURS * 3600
    _sessions[token] = {**user, 'created_at': now, 'expires_at': expires_at}
    return {"ok": True, "token": token, "user": user, "expires_at": expires_at}


@router.post("/api/auth/logout", tags=["Auth"], summary="Logout", description="Invalidate the current session token.")
def logout(x_auth_token: Optional[str] = Header(None)):
    if x_auth_token and x_auth_token in _sessions:
        del _sessions[x_auth_token]
    return {"ok": True}


@router.get("/api/auth/me", tags=["Auth"], summary="Current user", description="Return the logged-in employee and the views their role may open.")
def me(user: dict = Depends(require_auth)):
    db = get_db()
    fresh = db.get_employee(user['id'])
    if fresh is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    views = db.get_permissions().get(fresh.get('role'), [])
    return {"user": fresh, "allowed_views": views, "expires_at": user.get('expires_at')}


@router.post("/api/auth/change-password", tags=["Auth"], summary="Change own password")
def change_own_password(body: ChangePasswordBody, user: dict = Depends(require_auth)):
    db = get_db()
    if db.verify_user_password(user['email'], body.current_password) is None:
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db.change_password(user['id'], body.new_password)
    removed = invalidate_sessions_for_user(user['id'])
    _logger.warning("AUDIT PASSWORD_CHANGE | user=%s sessions_revoked=%d", user.get('email'), removed)
    return {"ok": True, "sessions_revoked": removed}
