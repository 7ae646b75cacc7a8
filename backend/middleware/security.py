"""
Transport-level protection for the sign-in API.
Security headers, per-client rate limits on the code endpoints and
logging of error responses.
"""
import time
from typing import Callable
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
import logging

from services.security import security_config, SecurityUtils
from services.rate_limiter import get_rate_limiter

logger = logging.getLogger(__name__)

SEND_CODE_PATH = "/api/auth/send-otp"
VERIFY_CODE_PATH = "/api/auth/verify-otp"

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds OWASP-recommended headers to every response."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            # Session cookies and codes must never be cached by intermediaries
            "Cache-Control": "no-store",
        }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        if security_config.enable_security_headers:
            for header, value in self.security_headers.items():
                response.headers.setdefault(header, value)
            if "Server" in response.headers:
                del response.headers["Server"]

        return response

class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limits per client IP and path.
    Code issuance and verification get hourly budgets; everything else
    shares the per-minute default.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.rate_limiter = get_rate_limiter()
        self.endpoint_limits = {
            SEND_CODE_PATH: {"requests": security_config.otp_requests_per_hour, "window": 3600},
            VERIFY_CODE_PATH: {"requests": security_config.otp_verifications_per_hour, "window": 3600},
            "default": {"requests": security_config.rate_limit_requests_per_minute, "window": 60}
        }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        client_ip = SecurityUtils.get_client_ip(request)
        path = request.url.path

        limit_config = self.endpoint_limits.get(path, self.endpoint_limits["default"])
        rate_result = await self.rate_limiter.check_rate_limit(
            f"rate_limit:{client_ip}:{path}",
            window_seconds=limit_config["window"],
            max_requests=limit_config["requests"]
        )

        if not rate_result.allowed:
            SecurityUtils.log_security_event(
                "rate_limit_blocked",
                {"path": path, "method": request.method, "retry_after": rate_result.retry_after},
                client_ip=client_ip
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "Too many requests. Please try again later.",
                    "reason": "rate_limited",
                    "retry_after": rate_result.retry_after
                },
                headers={
                    "X-RateLimit-Limit": str(limit_config["requests"]),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(rate_result.retry_after or limit_config["window"])
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit_config["requests"])
        response.headers["X-RateLimit-Remaining"] = str(rate_result.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(rate_result.reset_time.timestamp()))
        return response

class SecurityLoggingMiddleware(BaseHTTPMiddleware):
    """Logs error responses with timing; never logs bodies, cookies or codes."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        process_time = round(time.time() - start_time, 3)

        if response.status_code >= 400:
            SecurityUtils.log_security_event(
                "http_error_response",
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time": process_time,
                    "user_agent": request.headers.get("user-agent", "")
                },
                client_ip=SecurityUtils.get_client_ip(request)
            )

        response.headers["X-Process-Time"] = str(process_time)
        return response
