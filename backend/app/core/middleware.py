"""HTTP middleware and exception handlers"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import BillingError
from app.core.security import SESSION_COOKIE, get_client_identifier, check_rate_limit, log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Provider deliveries and infrastructure probes are never rate limited
UNLIMITED_PATHS = ("/billing/webhook", "/metrics", "/health")
WRITE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def get_allowed_origins():
    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins += ["http://localhost:3000", "http://127.0.0.1:3000"]
    return origins


def setup_cors_middleware(app):
    """Credentials are allowed so the session cookie reaches the API"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _rate_limited(request: Request, session_id) -> bool:
    if request.url.path in UNLIMITED_PATHS or request.method == "OPTIONS":
        return False
    identifier = get_client_identifier(request, session_id)
    if check_rate_limit(identifier, strict=request.method in WRITE_METHODS):
        return False
    security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {request.url.path}")
    return True


async def security_middleware(request: Request, call_next):
    """Rate limiting plus one access log line per request"""
    session_id = request.cookies.get(SESSION_COOKIE)
    status_code = 500
    error = None

    try:
        if _rate_limited(request, session_id):
            status_code = 429
            error = "Rate limit exceeded"
            return JSONResponse(status_code=429, content={"error": "rate_limited", "message": "Too many requests"})

        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Request to {request.url.path} failed: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def billing_exception_handler(request: Request, exc: BillingError):
    """Render domain errors with their status code and retryable flag"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Anything unexpected becomes a logged 500"""
    logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})
