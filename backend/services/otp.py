"""
One-time passcode issuance and verification for institutional email sign-in.

Issuance validates the address, replaces any live code for it and hands the
new code to a delivery hook. Verification delegates the read-check-delete
sequence to the credential store, which performs it atomically, and maps the
outcome onto the error taxonomy below.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dao.one_time_code_dao import OneTimeCodeDAO, VerifyOutcome
from services.security import SecurityConfig, SecurityUtils, security_config

logger = logging.getLogger(__name__)

class OTPError(Exception):
    """Base class for sign-in code failures. ``reason`` is stable for clients."""
    reason = "otp_error"
    status_code = 400
    default_message = "Verification failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

class OTPValidationError(OTPError):
    reason = "invalid_email"
    status_code = 400
    default_message = "invalid or non-institutional email"

class CodeNotFoundError(OTPError):
    reason = "not_found"
    status_code = 404
    default_message = "No active code for this email. Please request a new code."

class CodeExpiredError(OTPError):
    reason = "expired"
    status_code = 410
    default_message = "Code expired. Please request a new code."

class CodeMismatchError(OTPError):
    reason = "invalid_code"
    status_code = 400
    default_message = "Invalid code. Please try again."

class TooManyAttemptsError(OTPError):
    reason = "too_many_attempts"
    status_code = 429
    default_message = "Too many attempts. Please request a new code."

class PersistenceError(OTPError):
    reason = "unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again later."

_OUTCOME_ERRORS = {
    VerifyOutcome.NOT_FOUND: CodeNotFoundError,
    VerifyOutcome.EXPIRED: CodeExpiredError,
    VerifyOutcome.MISMATCH: CodeMismatchError,
    VerifyOutcome.TOO_MANY_ATTEMPTS: TooManyAttemptsError,
}

@dataclass(frozen=True)
class IssuedCode:
    email: str
    expires_at: datetime

@dataclass(frozen=True)
class VerifiedEmail:
    email: str
    email_verified: bool = True
    # Whatever the on_verified hook returned, e.g. the signed-in account
    account: Any = None

CodeSender = Callable[[str, str], None]

def log_code_delivery(email: str, code: str) -> None:
    """Default delivery hook. Mail transport lives outside this service."""
    if security_config.is_development:
        logger.info(f"Sign-in code for {email}: {code} (dev mode, not emailed)")
    else:
        logger.info(f"Sign-in code for {email} handed to delivery")

class OTPService:
    def __init__(self, db: AsyncSession, config: SecurityConfig = security_config,
                 clock: Callable[[], datetime] = SecurityUtils.get_utc_now,
                 sender: Optional[CodeSender] = None):
        self.store = OneTimeCodeDAO(db)
        self.db = db
        self.config = config
        self.clock = clock
        self.sender = sender or log_code_delivery

    def normalize_institutional_email(self, email: str) -> str:
        """Return the lower-cased address or raise ``OTPValidationError``."""
        normalized = SecurityUtils.sanitize_email(email)
        if not normalized:
            raise OTPValidationError()
        try:
            validated = validate_email(normalized, check_deliverability=False)
        except EmailNotValidError:
            raise OTPValidationError()
        if validated.domain.lower() not in self.config.institutional_domains:
            raise OTPValidationError()
        return normalized

    async def issue_code(self, email: str, client_ip: Optional[str] = None) -> IssuedCode:
        try:
            email = self.normalize_institutional_email(email)
        except OTPValidationError:
            SecurityUtils.log_security_event(
                "otp_issue_rejected_email",
                {"domain": email.rsplit("@", 1)[-1] if email and "@" in email else None},
                client_ip=client_ip
            )
            raise

        code = SecurityUtils.generate_numeric_code(6)
        expires_at = self.clock() + timedelta(minutes=self.config.otp_expiry_minutes)

        try:
            await self.store.replace_code(email, code, expires_at)
        except (SQLAlchemyError, OSError) as e:
            await self._rollback_quietly()
            logger.error(f"Failed to store sign-in code: {e}")
            SecurityUtils.log_security_event(
                "otp_store_failure",
                {"operation": "issue", "error_type": type(e).__name__},
                user_email=email,
                client_ip=client_ip
            )
            raise PersistenceError() from e

        SecurityUtils.log_security_event(
            "otp_issued",
            {"expires_at": expires_at.isoformat()},
            user_email=email,
            client_ip=client_ip
        )
        self.sender(email, code)
        return IssuedCode(email=email, expires_at=expires_at)

    async def verify_code(self, email: str, code: str, client_ip: Optional[str] = None,
                          on_verified: Optional[Callable[[str], Awaitable[Any]]] = None) -> VerifiedEmail:
        """
        Consume ``code`` for ``email``.

        ``on_verified`` runs inside the consuming transaction, which is
        committed once it returns. If it fails with a store error the code is
        restored and ``PersistenceError`` is raised.
        """
        email = SecurityUtils.sanitize_email(email)
        submitted = (code or "").strip()
        account = None

        try:
            outcome = await self.store.consume(
                email, submitted, now=self.clock(), max_attempts=self.config.otp_max_attempts,
                commit=on_verified is None
            )
            if outcome is VerifyOutcome.CONSUMED and on_verified is not None:
                account = await on_verified(email)
                await self.db.commit()
        except (SQLAlchemyError, OSError) as e:
            await self._rollback_quietly()
            logger.error(f"Failed to verify sign-in code: {e}")
            SecurityUtils.log_security_event(
                "otp_store_failure",
                {"operation": "verify", "error_type": type(e).__name__},
                user_email=email,
                client_ip=client_ip
            )
            raise PersistenceError() from e

        if outcome is VerifyOutcome.CONSUMED:
            SecurityUtils.log_security_event("otp_verified", {}, user_email=email, client_ip=client_ip)
            return VerifiedEmail(email=email, account=account)

        SecurityUtils.log_security_event(
            "otp_verification_failed",
            {"reason": outcome.value},
            user_email=email,
            client_ip=client_ip
        )
        raise _OUTCOME_ERRORS[outcome]()

    async def sweep_expired(self) -> int:
        removed = await self.store.delete_expired(self.clock())
        if removed:
            logger.info(f"Removed {removed} expired sign-in codes")
        return removed

    async def _rollback_quietly(self):
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback after store failure also failed: {e}")

# Background task removing codes nobody came back for
async def cleanup_expired_codes(session_factory=None):
    """Periodically sweep expired one-time codes."""
    if session_factory is None:
        from services.db import SessionLocal
        session_factory = SessionLocal

    while True:
        try:
            async with session_factory() as db:
                await OTPService(db).sweep_expired()
            await asyncio.sleep(security_config.otp_sweep_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in expired code cleanup: {e}")
            await asyncio.sleep(60)
