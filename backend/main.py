from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import asyncio
import logging
from api import auth, user
from middleware.gate import RouteGateMiddleware
from middleware.security import (
    SecurityHeadersMiddleware,
    RateLimitMiddleware,
    SecurityLoggingMiddleware
)
from services.otp import OTPError, cleanup_expired_codes
from services.rate_limiter import cleanup_rate_limiter
from services.security import security_config, gate_config, SecurityUtils

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start and stop the maintenance loops."""
    background_tasks = [
        asyncio.create_task(cleanup_rate_limiter()),
        asyncio.create_task(cleanup_expired_codes()),
    ]

    logger.info("Starting marketplace auth service")
    logger.info(f"  - Environment: {security_config.environment}")
    logger.info(f"  - Institutional domains: {', '.join(security_config.institutional_domains)}")
    logger.info(f"  - Code lifetime: {security_config.otp_expiry_minutes} minutes, "
                f"{security_config.otp_max_attempts} attempts")
    logger.info(f"  - Session lifetime: {security_config.session_expire_days} days ({security_config.jwt_algorithm})")
    logger.info(f"  - Gate: verify={gate_config.verify_path} complete_profile={gate_config.complete_profile_path} "
                f"landing={gate_config.landing_path}")

    yield

    for task in background_tasks:
        task.cancel()
    for task in background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Background maintenance tasks stopped")

app = FastAPI(
    title="Campus Marketplace Auth API",
    description="Institutional email sign-in with one-time codes and session-gated routes",
    version="1.0.0",
    lifespan=lifespan
)

# Last added runs first: logging wraps everything, the gate sits closest to the routes
app.add_middleware(RouteGateMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(SecurityLoggingMiddleware)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(user.router, prefix="/api/users", tags=["users"])

@app.get("/")
def root():
    """Root endpoint with basic application information."""
    return {
        "message": "Campus Marketplace Auth API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "operational"
    }

@app.get("/health")
def health_check():
    """Health check endpoint for load balancers and monitoring."""
    return {
        "status": "healthy",
        "timestamp": SecurityUtils.get_utc_now().isoformat(),
        "version": "1.0.0"
    }

@app.get("/health/ready")
async def readiness_check():
    """Readiness probe: the credential store must answer."""
    from services.db import SessionLocal

    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "timestamp": SecurityUtils.get_utc_now().isoformat(),
                "error": "Database connection failed"
            }
        )

    return {
        "status": "ready",
        "timestamp": SecurityUtils.get_utc_now().isoformat(),
        "checks": {"database": "healthy"}
    }

@app.get("/health/live")
def liveness_check():
    """Liveness probe for container orchestration."""
    return {
        "status": "alive",
        "timestamp": SecurityUtils.get_utc_now().isoformat()
    }

@app.exception_handler(OTPError)
async def otp_exception_handler(request: Request, exc: OTPError):
    """Sign-in code failures carry a stable reason so clients can offer a resend."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "reason": exc.reason}
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with security logging."""
    SecurityUtils.log_security_event(
        "request_validation_error",
        {
            "path": request.url.path,
            "method": request.method,
            "fields": [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        },
        client_ip=SecurityUtils.get_client_ip(request)
    )

    return JSONResponse(
        status_code=422,
        content={
            "error": "Invalid request format",
            "reason": "invalid_request",
            "details": [error.get("msg", "") for error in exc.errors()]
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with the same error envelope."""
    if exc.status_code in [400, 401, 403, 404, 429]:
        SecurityUtils.log_security_event(
            "http_exception",
            {
                "status_code": exc.status_code,
                "path": request.url.path,
                "method": request.method
            },
            client_ip=SecurityUtils.get_client_ip(request)
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail if hasattr(exc, 'detail') else "Request failed"},
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc: Exception):
    """Handle internal server errors without leaking details."""
    SecurityUtils.log_security_event(
        "internal_server_error",
        {
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__
        },
        client_ip=SecurityUtils.get_client_ip(request)
    )

    logger.error(f"Internal server error: {exc}")

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
