from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from checkin_api import config
from checkin_api.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict[str, Any] = Depends(require_session)):
    if not config.ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(config.DB_PATH)}


@router.get("/config/checkin")
def checkin_config():
    return {
        "session_grace_minutes": config.SESSION_GRACE_MINUTES,
        "session_default_length_minutes": config.SESSION_DEFAULT_LENGTH_MINUTES,
        "auth_token_ttl_seconds": config.AUTH_TOKEN_TTL_SECONDS,
        "scanner_email_domain": config.SCANNER_EMAIL_DOMAIN or None,
        "token_algorithm": "HMAC-SHA256",
        "token_fields": ["studentCode", "courseId", "keyword", "sessionId"],
    }
