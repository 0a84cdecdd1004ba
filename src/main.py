# src/main.py
"""
CaseVault FastAPI Application

Thin HTTP host around the secure access core: session lifecycle, audited
client record reads and the public input validation endpoint.
"""

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import os
import secrets

from src.core.config import settings, validate_required_settings
from src.core.exceptions import (
    AccessDeniedError,
    CaseVaultError,
    RateLimitedError,
    SessionTerminatedError,
)
from src.core.logging_config import setup_logging
from src.core.rate_limit_config import (
    GATEWAY_LIMITS,
    RATE_LIMIT_TIERS,
    get_rate_limit_message,
    get_real_ip,
    hashed_identifier,
)
from src.core.security import (
    SecureAccessGateway,
    SecureSessionStore,
    SessionMonitor,
    SessionSecurityConfig,
    get_secure_session_store,
    init_secure_session_store,
    rate_limiter,
)
from src.middleware.security_middleware import RateLimitMonitor, SecurityMiddleware
from src.models.records import AccessLogEntry, ClientRecord, ClientSummary
from src.models.session_state import Session, TerminationReason
from src.services.memory_store import InMemorySecureStore
from src.services.redis_service import RedisService, create_redis_service
from src.services.session_registry import RedisSessionRegistry
from src.services.store import SecureStore
from src.services.validation_service import validation_service

# Setup logging
logger = setup_logging()

# Collaborators, created in lifespan unless set beforehand (tests do)
data_store: Optional[SecureStore] = None
redis_service: Optional[RedisService] = None
secure_store: Optional[SecureSessionStore] = None

rate_limit_monitor = RateLimitMonitor()
security_middleware = SecurityMiddleware()


async def on_session_warning(session: Session, message: str) -> None:
    logger.info(f"⏰ Idle warning for session {session.session_id[:8]}...: {message}")


async def on_session_terminated(session: Session, reason: TerminationReason) -> None:
    logger.info(f"👋 Session {session.session_id[:8]}... ended: {reason.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    global data_store, redis_service, secure_store

    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 {settings.APP_NAME} API Starting...")
    logger.info("=" * 60)

    # Validate environment variables (warn but don't fail)
    if not validate_required_settings():
        logger.warning("⚠️ Some settings are missing or inconsistent - running with reduced guarantees")

    try:
        if data_store is None:
            registry = None
            if settings.REDIS_URL:
                redis_service = await create_redis_service(settings.REDIS_URL)
                if redis_service.is_connected():
                    registry = RedisSessionRegistry(redis_service, settings.SESSION_KEY_TTL_SECONDS)
            data_store = InMemorySecureStore(session_registry=registry)

        if secure_store is None:
            secure_store = init_secure_session_store(
                data_store,
                config=SessionSecurityConfig.from_settings(settings),
                organization_domain=settings.ORGANIZATION_EMAIL_DOMAIN,
                user_agent_mismatch_action=settings.USER_AGENT_MISMATCH_ACTION,
                on_warning=on_session_warning,
                on_terminated=on_session_terminated,
            )

        rate_limiter.start_cleanup(settings.RATE_LIMIT_CLEANUP_SECONDS)

        logger.info("📋 Configuration:")
        logger.info(f"  - Idle timeout: {settings.IDLE_TIMEOUT_MINUTES} min, absolute: {settings.SESSION_TIMEOUT_MINUTES} min")
        logger.info(f"  - Session registry: {'redis' if redis_service and redis_service.is_connected() else 'memory'}")
        logger.info("✅ API Ready!")

    except Exception as e:
        logger.error(f"❌ Failed to initialize CaseVault: {e}")
        raise  # Re-raise to fail startup

    yield

    # Shutdown
    logger.info(f"🛑 {settings.APP_NAME} API Shutting down...")
    if secure_store is not None:
        await secure_store.shutdown()
    rate_limiter.dispose()
    if redis_service is not None:
        await redis_service.shutdown()


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="CaseVault API",
    description="Audited, role-gated access to client records",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None
)

# =============================================================================
# API KEY AUTHENTICATION
# =============================================================================

API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


def get_api_key():
    """Get API key from environment or generate one for development"""
    api_key = os.getenv("CASEVAULT_API_KEY")
    if not api_key:
        # Generate a secure key for development
        api_key = secrets.token_urlsafe(32)
        logger.warning("⚠️ No CASEVAULT_API_KEY set. Generated temporary key.")
        logger.warning("⚠️ Set CASEVAULT_API_KEY environment variable for production!")
    else:
        logger.info("✅ API Key configured from environment")
    return api_key


# Initialize API key
VALID_API_KEY = get_api_key()


def get_safe_error_message(error: Exception, context: str = "") -> str:
    """Return a safe error message that doesn't expose internal details"""
    # Log the full error internally
    logger.error(f"Error in {context}: {type(error).__name__}: {str(error)}")

    if isinstance(error, HTTPException):
        return error.detail
    if isinstance(error, CaseVaultError):
        return error.user_message

    error_messages = {
        "ConnectionError": "Connection problem. Please try again later.",
        "TimeoutError": "The request took too long. Please try again.",
    }
    return error_messages.get(type(error).__name__, "An error occurred. Please try again later.")


async def verify_api_key(api_key: Optional[str] = Depends(api_key_header)):
    """Verify API key for protected endpoints"""
    if api_key is None:
        logger.warning("❌ Request without API key")
        raise HTTPException(
            status_code=401,
            detail="Missing API Key. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not secrets.compare_digest(api_key, VALID_API_KEY):
        logger.warning("❌ Invalid API key attempt detected")
        raise HTTPException(
            status_code=401,
            detail="Invalid API Key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key

# =============================================================================
# ERROR MAPPING
# =============================================================================

# Denied and not-found share a status and a message
STATUS_BY_ERROR_KIND = {
    "validation_failed": 422,
    "access_denied": 403,
    "not_found": 403,
    "rate_limited": 429,
    "session_terminated": 401,
    "store_unavailable": 503,
    "service_error": 503,
    "configuration_error": 500,
}


async def casevault_error_handler(request: Request, exc: CaseVaultError):
    status_code = STATUS_BY_ERROR_KIND.get(exc.error_kind, 500)
    if status_code >= 500:
        logger.error(f"{exc.error_kind} on {request.url.path}: {exc}")

    content: Dict[str, Any] = {"detail": exc.user_message, "error": exc.error_kind}
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, SessionTerminatedError):
        headers["WWW-Authenticate"] = "Session"
    return JSONResponse(status_code=status_code, content=content, headers=headers)


app.add_exception_handler(CaseVaultError, casevault_error_handler)

# =============================================================================
# RATE LIMITING
# =============================================================================

# Create limiter instance with custom IP extraction
limiter = Limiter(key_func=get_real_ip)


def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit response with helpful message"""
    rate_limit_monitor.record_violation(get_real_ip(request))
    response = PlainTextResponse(
        content=get_rate_limit_message("default"),
        status_code=429,
    )
    response.headers["Retry-After"] = "60"
    response.headers["X-RateLimit-Limit"] = str(getattr(exc, "limit", "N/A"))
    return response


app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)

# CRITICAL: Add limiter to app state (required by slowapi)
app.state.limiter = limiter

RATE_LIMITS = RATE_LIMIT_TIERS["default"]


def enforce_gateway_limit(kind: str, identifier: str) -> None:
    """Apply the fixed-window quota for ``kind`` to one caller"""
    max_requests, window_ms = GATEWAY_LIMITS[kind]
    key = f"{kind}:{identifier}"
    if not rate_limiter.allow(key, max_requests, window_ms):
        rate_limit_monitor.record_violation(identifier)
        raise RateLimitedError(
            f"Rate limit exceeded for {kind}",
            identifier=key,
            retry_after_seconds=rate_limiter.retry_after_seconds(key)
        )

# =============================================================================
# MIDDLEWARE
# =============================================================================

app.middleware("http")(security_middleware)

# CORS configuration - environment-aware
production_origins = [
    origin.strip()
    for origin in os.getenv("CASEVAULT_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]

development_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000"
]

is_production = os.getenv("CASEVAULT_ENV") == "production"
allowed_origins = production_origins + ([] if is_production else development_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# =============================================================================
# API MODELS
# =============================================================================


class SessionRequest(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=254)


class SessionResponse(BaseModel):
    session_id: str
    session_token: str
    idle_expires_at: datetime
    absolute_expires_at: datetime


class ValidationRequest(BaseModel):
    value: Optional[str] = Field(default=None, max_length=10_000)
    kind: str = "text"


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_data_store() -> SecureStore:
    if data_store is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return data_store


async def current_session(
    x_session_id: Optional[str] = Header(default=None),
    x_session_token: Optional[str] = Header(default=None),
    user_agent: Optional[str] = Header(default=None)
) -> SessionMonitor:
    """Resolve the session headers to a live session monitor"""
    if not x_session_id or not x_session_token:
        raise HTTPException(
            status_code=401,
            detail="Missing session. Include 'X-Session-Id' and 'X-Session-Token' headers.",
        )
    monitor = await get_secure_session_store().validate_and_get_session(
        x_session_id, x_session_token, user_agent=user_agent or ""
    )
    if monitor is None:
        raise SessionTerminatedError("Invalid or expired session", session_id=x_session_id)
    return monitor


async def active_session(monitor: SessionMonitor = Depends(current_session)) -> SessionMonitor:
    """Like current_session, and counts the request as user activity"""
    if not await monitor.record_activity():
        raise SessionTerminatedError(
            "Session ended before the request was applied",
            session_id=monitor.session_id,
            reason=monitor.session.termination_reason.value if monitor.session.termination_reason else None
        )
    return monitor


def build_gateway(request: Request, monitor: SessionMonitor) -> SecureAccessGateway:
    return SecureAccessGateway(
        get_data_store(),
        monitor.session,
        ip_address=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        search_limit=settings.SEARCH_RESULT_LIMIT,
        search_concurrency=settings.SEARCH_CONCURRENCY,
    )

# =============================================================================
# HEALTH
# =============================================================================


@app.get("/", status_code=200)
def read_root():
    return {"status": "ok", "version": "1.0.0", "service": "casevault"}


@app.get("/health", status_code=200)
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/healthz", response_class=PlainTextResponse, status_code=200)
def healthz():
    """Plain text health check for maximum compatibility"""
    return "OK"


@app.get("/health/detailed", dependencies=[Depends(verify_api_key)])
async def health_detailed():
    """Health of optional infrastructure plus security metrics"""
    redis_health = await redis_service.health_check() if redis_service else {"healthy": True, "status": "disabled"}
    return {
        "overall": "healthy" if redis_health.get("healthy") else "degraded",
        "redis": redis_health,
        "sessions": secure_store.get_metrics() if secure_store else {},
        "rate_limiter": rate_limiter.get_metrics(),
        "rate_limit_violations": rate_limit_monitor.get_violation_stats(),
        "suspicious_requests": security_middleware.suspicious_count,
    }

# =============================================================================
# SESSION LIFECYCLE
# =============================================================================


@app.post("/session", response_model=SessionResponse, dependencies=[Depends(verify_api_key)])
@limiter.limit(RATE_LIMITS["session_create"])
async def create_session(request: Request, req: SessionRequest):
    """
    Start a monitored session for a principal the auth front-end already
    authenticated.
    """
    principal_id = validation_service.require_valid("principal_id", req.principal_id, "text")
    email = validation_service.require_valid("email", req.email, "email") if req.email else None

    try:
        monitor, token = await get_secure_session_store().create_session(
            principal_id,
            email=email,
            ip_address=get_real_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except AccessDeniedError:
        raise HTTPException(status_code=403, detail="This account is not authorised to use CaseVault.")

    return SessionResponse(
        session_id=monitor.session_id,
        session_token=token,
        idle_expires_at=monitor.idle_deadline,
        absolute_expires_at=monitor.absolute_deadline,
    )


@app.post("/session/activity")
async def session_activity(monitor: SessionMonitor = Depends(active_session)):
    """Explicit activity signal from the UI"""
    return monitor.get_status()


@app.get("/session/status")
async def session_status(monitor: SessionMonitor = Depends(current_session)):
    """Session state without counting as activity"""
    return monitor.get_status()


@app.post("/session/logout")
async def session_logout(monitor: SessionMonitor = Depends(current_session)):
    await get_secure_session_store().logout(monitor.session_id)
    return {"logged_out": True, "message": TerminationReason.LOGOUT.message}

# =============================================================================
# CLIENT RECORDS
# =============================================================================


@app.get("/clients/search", response_model=List[ClientSummary])
async def search_clients(
    request: Request,
    q: str = Query(default="", max_length=200),
    monitor: SessionMonitor = Depends(active_session)
):
    enforce_gateway_limit("search", monitor.session.principal_id)
    term = validation_service.search_term(q)
    result = await build_gateway(request, monitor).search(term)
    return result.raise_for_outcome()


@app.get("/clients/{record_id}", response_model=ClientRecord)
async def get_client(request: Request, record_id: str, monitor: SessionMonitor = Depends(active_session)):
    enforce_gateway_limit("record_read", monitor.session.principal_id)
    result = await build_gateway(request, monitor).get_full(record_id)
    return result.raise_for_outcome()


@app.get("/clients/{record_id}/summary", response_model=ClientSummary)
async def get_client_summary(request: Request, record_id: str, monitor: SessionMonitor = Depends(active_session)):
    enforce_gateway_limit("record_read", monitor.session.principal_id)
    result = await build_gateway(request, monitor).get_summary(record_id)
    return result.raise_for_outcome()


@app.get("/access-logs", response_model=List[AccessLogEntry])
async def get_access_logs(
    request: Request,
    record_id: Optional[str] = None,
    days: int = settings.ACCESS_LOG_WINDOW_DAYS,
    monitor: SessionMonitor = Depends(active_session)
):
    """Audit trail of client record access (admin only)"""
    enforce_gateway_limit("access_log", monitor.session.principal_id)
    result = await build_gateway(request, monitor).get_access_log(record_id, days)
    return result.raise_for_outcome()

# =============================================================================
# INPUT VALIDATION
# =============================================================================


@app.post("/validate")
@limiter.limit(RATE_LIMITS["validate"])
async def validate_input(request: Request, req: ValidationRequest):
    """Public validation endpoint used by unauthenticated submission forms"""
    enforce_gateway_limit("public_submission", hashed_identifier("ip", get_real_ip(request)))
    return validation_service.validate(req.value, req.kind).to_dict()


# Main entry point
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting {settings.APP_NAME} on port {port}...")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
