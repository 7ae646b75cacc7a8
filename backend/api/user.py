from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from schemas.user import CompleteProfileRequest, CompleteProfileResponse, UserOut
from services.db import get_db
from models.user import User
from dao.user_dao import UserDAO
from services.auth import (
    InvalidSessionError, claims_for_user, get_current_user, get_token_from_request,
    refresh_session, set_session_cookie
)
from services.security import SecurityUtils
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/me", response_model=UserOut)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current user profile information."""
    return current_user

@router.post("/complete-profile", response_model=CompleteProfileResponse)
async def complete_profile(data: CompleteProfileRequest, request: Request, response: Response,
                           current_user: User = Depends(get_current_user),
                           db: AsyncSession = Depends(get_db)):
    """
    Save name and phone number and mark the profile complete.
    The session is re-issued so the route gate sees ``profileCompleted``
    on the very next request.
    """
    client_ip = SecurityUtils.get_client_ip(request)

    if not current_user.uf_email_verified:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Email address must be verified before completing the profile"
        )

    user = await UserDAO(db).complete_profile(current_user, data.name, data.phone_number)

    try:
        token = refresh_session(get_token_from_request(request), claims_for_user(user))
    except InvalidSessionError:
        # get_current_user already accepted this token, so it can only have expired in between
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    set_session_cookie(response, token)

    SecurityUtils.log_security_event(
        "profile_completed",
        {"user_id": user.id},
        user_email=user.email,
        client_ip=client_ip
    )

    return CompleteProfileResponse(message="Profile completed successfully", user=UserOut.model_validate(user))
