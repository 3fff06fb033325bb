"""Admin router: permissions, SMTP settings, database backups, danger zone."""
import os
import io
import zipfile
import tempfile
from datetime import datetime as _backup_dt
from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import Optional, List
from ondutylib.database import ALL_VIEWS, DEFAULT_ADMIN_ID, ROLES, SMTP_COLUMNS
from ..dependencies import (
    get_db, require_admin, require_auth, _sanitize_500, _logger, _sessions, limiter,
    raise_for_value_error,
)
from .events import broadcast

router = APIRouter()


# ── Permissions ───────────────────────────────────────────────

class PermissionsBody(BaseModel):
    allowed_views: List[str]


@router.get("/api/permissions", tags=["Admin"], summary="Role permissions", description="Views each role may open, plus the list of known views.")
def get_permissions(_user: dict = Depends(require_auth)):
    return {"permissions": get_db().get_permissions(), "views": ALL_VIEWS}


@router.put("/api/permissions/{role}", tags=["Admin"], summary="Set role permissions")
def set_permissions(role: str, body: PermissionsBody, cur_user: dict = Depends(require_admin)):
    if role not in ROLES:
        raise HTTPException(status_code=404, detail=f"Unknown role '{role}'")
    unknown = [v for v in body.allowed_views if v not in ALL_VIEWS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown views: {', '.join(unknown)}")
    views = [v for v in ALL_VIEWS if v in body.allowed_views]
    try:
        get_db().set_permissions(role, views)
    except ValueError as e:
        raise raise_for_value_error(e)
    _logger.warning("AUDIT PERMISSIONS | admin=%s role=%s views=%d", cur_user.get('email'), role, len(views))
    broadcast("settings_changed", {"key": "permissions", "role": role})
    return {"ok": True, "role": role, "allowed_views": views}


# ── SMTP settings ─────────────────────────────────────────────

class SmtpBody(BaseModel):
    host: str = Field(..., min_length=1)
    port: int = Field(587, ge=1, le=65535)
    secure: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: str = Field(..., min_length=3)
    from_name: Optional[str] = None


def _smtp_public(settings: dict) -> dict:
    public = {k: settings.get(k) for k in SMTP_COLUMNS if k != 'password'}
    public['has_password'] = bool(settings.get('password'))
    return public


@router.get("/api/admin/smtp", tags=["Admin"], summary="Get SMTP settings", description="The password is never returned; `has_password` tells whether one is stored.")
def get_smtp(_cur_user: dict = Depends(require_admin)):
    return _smtp_public(get_db().get_smtp_settings())


@router.put("/api/admin/smtp", tags=["Admin"], summary="Save SMTP settings", description="An empty password keeps the stored one.")
def set_smtp(body: SmtpBody, cur_user: dict = Depends(require_admin)):
    try:
        saved = get_db().set_smtp_settings(body.model_dump())
    except Exception as e:
        raise _sanitize_500(e, 'set_smtp')
    _logger.warning("AUDIT SMTP_UPDATE | admin=%s host=%s", cur_user.get('email'), body.host)
    return {"ok": True, "settings": _smtp_public(saved)}


# ── Backups ───────────────────────────────────────────────────

_BACKUP_PREFIX = 'onduty_backup_'
_BACKUP_MAX_COUNT = 7


def _get_backup_dir() -> str:
    import api.main as _main
    backup_dir = os.path.join(os.path.dirname(os.path.abspath(_main.DB_PATH)), 'backups')
    os.makedirs(backup_dir, exist_ok=True)
    return backup_dir


def _backup_files(backup_dir: str) -> List[str]:
    return sorted(
        [f for f in os.listdir(backup_dir) if f.startswith(_BACKUP_PREFIX) and f.endswith('.zip')],
        reverse=True,
    )


def _create_zip_bytes() -> bytes:
    """Snapshot the live database with SQLite's online backup and zip it."""
    buf = io.BytesIO()
    with tempfile.TemporaryDirectory() as tmp:
        snapshot = get_db().backup_to(os.path.join(tmp, 'onduty.db'))
        with zipfile.ZipFile(buf, mode='w', compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(snapshot, arcname='onduty.db')
    return buf.getvalue()


def _rotate_backups(backup_dir: str, max_count: int = _BACKUP_MAX_COUNT) -> None:
    """Keep only the newest max_count backup files."""
    for old in _backup_files(backup_dir)[max_count:]:
        try:
            os.remove(os.path.join(backup_dir, old))
            _logger.info("Rotated old backup: %s", old)
        except OSError as e:
            _logger.warning("Could not remove old backup %s: %s", old, e)


def _check_backup_name(filename: str) -> str:
    if not filename.startswith(_BACKUP_PREFIX) or not filename.endswith('.zip') or '/' in filename or '..' in filename:
        raise HTTPException(status_code=400, detail="Invalid backup file name")
    fpath = os.path.join(_get_backup_dir(), filename)
    if not os.path.isfile(fpath):
        raise HTTPException(status_code=404, detail="Backup not found")
    return fpath


def _zip_response(data: bytes, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(data),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/admin/backups", tags=["Admin"], summary="List database backups")
def list_backups(_admin: dict = Depends(require_admin)):
    backup_dir = _get_backup_dir()
    result = []
    for fname in _backup_files(backup_dir):
        stat = os.stat(os.path.join(backup_dir, fname))
        result.append({
            "filename": fname,
            "size_bytes": stat.st_size,
            "created_at": _backup_dt.fromtimestamp(stat.st_mtime).isoformat(),
        })
    return {"backups": result}


@router.get("/api/admin/backups/{filename}/download", tags=["Admin"], summary="Download saved backup")
def download_saved_backup(filename: str, _admin: dict = Depends(require_admin)):
    with open(_check_backup_name(filename), 'rb') as f:
        data = f.read()
    return _zip_response(data, filename)


@router.delete("/api/admin/backups/{filename}", tags=["Admin"], summary="Delete saved backup")
def delete_saved_backup(filename: str, _admin: dict = Depends(require_admin)):
    os.remove(_check_backup_name(filename))
    return {"ok": True, "deleted": filename}


@router.get("/api/backup/download", tags=["Admin"], summary="Download current database backup", description="Consistent snapshot of the SQLite database (online backup), zipped. A copy is also kept server-side.")
@limiter.limit("5/minute")
def backup_download(request: Request, admin: dict = Depends(require_admin)):
    try:
        data = _create_zip_bytes()
    except Exception as e:
        raise _sanitize_500(e, 'backup_download')
    ts = _backup_dt.now().strftime('%Y%m%d_%H%M%S')
    filename = f"{_BACKUP_PREFIX}{ts}.zip"
    backup_dir = _get_backup_dir()
    try:
        with open(os.path.join(backup_dir, filename), 'wb') as f:
            f.write(data)
        _rotate_backups(backup_dir)
    except OSError as e:
        _logger.warning("Could not save backup to disk: %s", e)
    _logger.warning("AUDIT BACKUP | admin=%s file=%s bytes=%d", admin.get('email'), filename, len(data))
    return _zip_response(data, filename)


# ── Danger zone ───────────────────────────────────────────────

class ResetBody(BaseModel):
    confirm: str


@router.post("/api/admin/reset", tags=["Admin"], summary="Reset all data", description="Delete everything except the default administrator and re-seed defaults. Send `{\"confirm\": \"RESET\"}`.")
def reset_all(body: ResetBody, admin: dict = Depends(require_admin)):
    if body.confirm != 'RESET':
        raise HTTPException(status_code=400, detail="Type RESET to confirm")
    try:
        get_db().reset_all()
    except Exception as e:
        raise _sanitize_500(e, 'reset_all')
    # Everyone but the default administrator is gone.
    for tok in [t for t, s in _sessions.items() if s.get('id') != DEFAULT_ADMIN_ID]:
        _sessions.pop(tok, None)
    _logger.warning("AUDIT RESET_ALL | admin=%s", admin.get('email'))
    broadcast("schedule_changed", {"reset": True})
    return {"ok": True}
