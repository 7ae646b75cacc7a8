"""
Session tokens carrying the sign-in claims used by the route gate.

The gate reads ``ufEmailVerified`` and ``profileCompleted`` straight from the
signed token instead of querying the database on every request. Any code that
changes either flag must mint a replacement with ``refresh_session``; until it
does, the old token keeps its claims until it expires.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import HTTPException, status, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from dao.user_dao import UserDAO
from models.user import User
from services.db import get_db
from services.security import security_config, SecurityUtils
import logging

logger = logging.getLogger(__name__)

TOKEN_TYPE = "session"

class InvalidSessionError(Exception):
    """Raised when a token cannot be refreshed because it does not verify."""

@dataclass(frozen=True)
class SessionClaims:
    subject_id: str
    email: Optional[str] = None
    uf_email_verified: bool = False
    profile_completed: bool = False

def claims_for_user(user: User) -> SessionClaims:
    return SessionClaims(
        subject_id=str(user.id),
        email=user.email,
        uf_email_verified=bool(user.uf_email_verified),
        profile_completed=bool(user.profile_completed),
    )

def issue_session(subject_id, claims: SessionClaims, expires_delta: timedelta = None) -> str:
    """Sign a session token for ``subject_id`` embedding the two gate claims."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(days=security_config.session_expire_days))

    to_encode = {
        "sub": str(subject_id),
        "email": claims.email,
        "ufEmailVerified": bool(claims.uf_email_verified),
        "profileCompleted": bool(claims.profile_completed),
        "exp": expire,
        "iat": now,
        "type": TOKEN_TYPE,
        "jti": SecurityUtils.generate_secure_token(16),
    }

    return jwt.encode(to_encode, security_config.jwt_secret_key, algorithm=security_config.jwt_algorithm)

def decode_session(token: Optional[str]) -> Optional[SessionClaims]:
    """Verify a token. Anything that does not verify is treated as no session."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            security_config.jwt_secret_key,
            algorithms=[security_config.jwt_algorithm]
        )
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject or payload.get("type") != TOKEN_TYPE:
        return None

    return SessionClaims(
        subject_id=str(subject),
        email=payload.get("email"),
        uf_email_verified=payload.get("ufEmailVerified") is True,
        profile_completed=payload.get("profileCompleted") is True,
    )

def refresh_session(existing_token: str, updated_claims: SessionClaims) -> str:
    """
    Re-issue a session after a claim changed.
    The subject always comes from the verified existing token.
    """
    current = decode_session(existing_token)
    if current is None:
        raise InvalidSessionError("Session token is invalid or expired")

    merged = replace(updated_claims, subject_id=current.subject_id)
    token = issue_session(current.subject_id, merged)
    SecurityUtils.log_security_event(
        "session_refreshed",
        {
            "subject_id": current.subject_id,
            "uf_email_verified": merged.uf_email_verified,
            "profile_completed": merged.profile_completed,
        },
        user_email=merged.email
    )
    return token

def get_token_from_request(request: Request) -> Optional[str]:
    """Session cookie first, then an ``Authorization: Bearer`` header."""
    token = request.cookies.get(security_config.session_cookie_name)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None

def set_session_cookie(response: Response, token: str):
    response.set_cookie(
        key=security_config.session_cookie_name,
        value=token,
        max_age=security_config.session_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=security_config.session_cookie_secure,
        samesite="lax",
        path="/",
    )

def clear_session_cookie(response: Response):
    response.delete_cookie(
        key=security_config.session_cookie_name,
        path="/",
        httponly=True,
        secure=security_config.session_cookie_secure,
        samesite="lax",
    )

async def get_session_claims(request: Request) -> SessionClaims:
    """Dependency for API routes: the verified claims or 401."""
    claims = decode_session(get_token_from_request(request))
    if claims is None:
        SecurityUtils.log_security_event(
            "api_request_without_session",
            {"path": request.url.path},
            client_ip=SecurityUtils.get_client_ip(request)
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims

async def get_current_user(
    request: Request,
    claims: SessionClaims = Depends(get_session_claims),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Load the account behind the session. Stale sessions for deleted users get 401."""
    try:
        user_id = int(claims.subject_id)
    except ValueError:
        user_id = None

    user = await UserDAO(db).get_by_id(user_id) if user_id is not None else None
    if not user:
        SecurityUtils.log_security_event(
            "session_user_not_found",
            {"subject_id": claims.subject_id},
            user_email=claims.email,
            client_ip=SecurityUtils.get_client_ip(request)
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
