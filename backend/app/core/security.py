"""Request authentication, rate-limit identity and access logging.

Sessions are issued by the account service and shared through Redis; this
service only resolves a ``session_id`` cookie to a user id.
"""
import json
import logging
from typing import Optional
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session
from app.db.redis import get_session, check_rate_limit as redis_check_rate_limit
from app.db.session import get_db
from app.models.user import User
from app.utils.dates import utc_now

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

SESSION_COOKIE = "session_id"


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_auth(request: Request) -> int:
    """Dependency: resolve the session cookie to a user id (401 otherwise)"""
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        raise HTTPException(401, "Authentication required")

    user_id = get_session(session_id)
    if not user_id:
        security_logger.info(f"Rejected unknown or expired session on {request.url.path}")
        raise HTTPException(401, "Session expired or unknown")
    return user_id


def require_admin(
    request: Request,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
) -> int:
    """Dependency: Require an authenticated administrator, return user_id"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_admin:
        security_logger.warning(f"Admin access denied - User: {user_id}, Path: {request.url.path}")
        raise HTTPException(403, "Admin access required")
    return user_id


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Rate-limit bucket: the session when there is one, else the client IP"""
    return f"session:{session_id}" if session_id else f"ip:{_client_ip(request)}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """True while ``identifier`` is under its limit; ``strict`` applies the write limit"""
    return redis_check_rate_limit(identifier, strict=strict)


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """One structured line per request; warnings for errors and 4xx/5xx"""
    entry = {
        "at": utc_now().isoformat(),
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
        "client_ip": _client_ip(request),
        "session": f"{session_id[:8]}..." if session_id else None,
        "error": error,
    }
    if request.url.query:
        entry["query"] = str(request.url.query)

    message = f"API Access: {json.dumps(entry)}"
    if error or status_code >= 400:
        api_access_logger.warning(message)
    else:
        api_access_logger.info(message)
