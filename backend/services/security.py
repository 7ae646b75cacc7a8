"""
Security configuration and shared utilities for the sign-in flow.
Holds session signing settings, one-time-code policy, route gate settings
and the helpers used for client identification and security event logging.
"""
import os
import secrets
import string
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"

def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())

class SecurityConfig:
    """Centralized security configuration with validation."""

    def __init__(self):
        self.environment = os.getenv("ENVIRONMENT", "development")

        # Session token signing
        self.jwt_secret_key = self._get_or_generate_jwt_secret()
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")
        self.session_expire_days = int(os.getenv("SESSION_EXPIRE_DAYS", "7"))
        self.session_cookie_name = os.getenv("SESSION_COOKIE_NAME", "marketplace-session")
        self.session_cookie_secure = _env_bool("SESSION_COOKIE_SECURE", "true")

        # One-time code policy
        self.otp_expiry_minutes = int(os.getenv("OTP_EXPIRY_MINUTES", "10"))
        self.otp_max_attempts = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
        self.institutional_domains = tuple(
            domain.lower() for domain in _env_list("INSTITUTIONAL_DOMAINS", "ufl.edu,gators.ufl.edu")
        )
        self.otp_sweep_interval_seconds = int(os.getenv("OTP_SWEEP_INTERVAL_SECONDS", "300"))

        # Rate limiting settings
        self.rate_limit_requests_per_minute = int(os.getenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "60"))
        self.otp_requests_per_hour = int(os.getenv("OTP_REQUESTS_PER_HOUR", "5"))
        self.otp_verifications_per_hour = int(os.getenv("OTP_VERIFICATIONS_PER_HOUR", "20"))

        # Security headers
        self.enable_security_headers = _env_bool("ENABLE_SECURITY_HEADERS", "true")

        self._validate_config()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def _get_or_generate_jwt_secret(self) -> str:
        """
        Get the session signing secret from environment or generate a secure one.
        A generated secret invalidates every session on restart.
        """
        secret = os.getenv("JWT_SECRET_KEY")

        if not secret:
            logger.warning("JWT_SECRET_KEY not found in environment. Generating secure random secret.")
            secret = self._generate_secure_secret()
            logger.info("Generated secure JWT secret. Sessions will not survive a restart.")

        elif len(secret) < 32:
            logger.error("JWT_SECRET_KEY is too short! Must be at least 32 characters.")
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters long")

        elif secret in ["super-secret-key", "secret", "password", "key", "fallback-secret"]:
            logger.error("JWT_SECRET_KEY appears to be a default/weak value!")
            raise ValueError("JWT_SECRET_KEY cannot be a default or weak value")

        return secret

    def _generate_secure_secret(self, length: int = 64) -> str:
        """Generate cryptographically secure secret key."""
        alphabet = string.ascii_letters + string.digits + "!@#$%^&*()_+-="
        return ''.join(secrets.choice(alphabet) for _ in range(length))

    def _validate_config(self):
        """Validate security configuration for production readiness."""
        issues = []

        if self.jwt_algorithm not in ["HS256", "HS384", "HS512"]:
            issues.append(f"Unsupported JWT algorithm: {self.jwt_algorithm}")

        if self.session_expire_days > 30:
            issues.append("Session lifetime too long (>30 days); profile claims stay stale longer")

        if self.otp_max_attempts > 10:
            issues.append("One-time code attempt ceiling too permissive (>10 attempts)")

        if self.otp_expiry_minutes > 30:
            issues.append("One-time code lifetime too long (>30 minutes)")

        if not self.institutional_domains:
            issues.append("INSTITUTIONAL_DOMAINS is empty; every sign-in will be rejected")

        if issues:
            logger.warning("Security configuration issues detected:")
            for issue in issues:
                logger.warning(f"  - {issue}")

class GateConfig:
    """Route gate paths. Every value can be overridden from the environment."""

    def __init__(self):
        self.verify_path = os.getenv("GATE_VERIFY_PATH", "/verify")
        self.complete_profile_path = os.getenv("GATE_COMPLETE_PROFILE_PATH", "/complete-profile")
        self.landing_path = os.getenv("GATE_LANDING_PATH", "/buy")

        # Matched exactly
        self.exempt_paths = frozenset(_env_list("GATE_EXEMPT_PATHS", "/,/buy,/sublease,/terms,/privacy"))
        # Matched with startswith
        self.exempt_prefixes = _env_list(
            "GATE_EXEMPT_PREFIXES",
            "/verify,/login-otp,/auth/,/api/,/static,/_next,/favicon,/logo,"
            "/apple-touch-icon,/manifest,/docs,/redoc,/openapi.json,/health"
        )
        # Actions that additionally demand a verified institutional email
        self.restricted_prefixes = _env_list("GATE_RESTRICTED_PREFIXES", "/sell")

class SecurityUtils:
    """Security utility functions shared by the API, services and middleware."""

    @staticmethod
    def generate_secure_token(length: int = 32) -> str:
        """Generate cryptographically secure URL-safe token."""
        return secrets.token_urlsafe(length)

    @staticmethod
    def generate_numeric_code(digits: int = 6) -> str:
        """Uniformly random numeric code without a leading zero (100000-999999 for six digits)."""
        low = 10 ** (digits - 1)
        return str(low + secrets.randbelow(9 * low))

    @staticmethod
    def get_client_ip(request) -> str:
        """Extract client IP address handling proxies and load balancers."""
        forwarded_ips = request.headers.get("X-Forwarded-For")
        if forwarded_ips:
            # Take the first IP (original client)
            return forwarded_ips.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"

    @staticmethod
    def sanitize_email(email: str) -> str:
        """Normalize an email address; the store treats addresses case-insensitively."""
        if not email:
            return ""
        return email.lower().strip()

    @staticmethod
    def log_security_event(event_type: str, details: dict, user_email: Optional[str] = None,
                          client_ip: Optional[str] = None):
        """Log security events for monitoring and analysis."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "user_email": user_email,
            "client_ip": client_ip,
            "details": details
        }

        logger.info(f"SECURITY_EVENT: {log_entry}")

    @staticmethod
    def get_utc_now() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

# Global configuration instances
security_config = SecurityConfig()
gate_config = GateConfig()
