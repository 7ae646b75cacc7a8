from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from services.db import get_db
from dao.user_dao import UserDAO
from schemas.otp import ErrorResponse, SendCodeRequest, SendCodeResponse, VerifyCodeRequest
from schemas.user import UserOut, VerifyCodeResponse
from services.auth import claims_for_user, clear_session_cookie, issue_session, set_session_cookie
from services.otp import OTPService
from services.security import SecurityUtils, gate_config, security_config
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/send-otp", response_model=SendCodeResponse,
             responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}})
async def send_otp(data: SendCodeRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """Issue a fresh sign-in code; any earlier code for the address stops working."""
    client_ip = SecurityUtils.get_client_ip(request)
    await OTPService(db).issue_code(data.email, client_ip=client_ip)

    return SendCodeResponse(
        message=f"Verification code sent! It expires in {security_config.otp_expiry_minutes} minutes."
    )

@router.post("/verify-otp", response_model=VerifyCodeResponse,
             responses={code: {"model": ErrorResponse} for code in (400, 404, 410, 429, 503)})
async def verify_otp(data: VerifyCodeRequest, request: Request, response: Response,
                     db: AsyncSession = Depends(get_db)):
    """Consume a sign-in code and start a session for the address."""
    client_ip = SecurityUtils.get_client_ip(request)
    users = UserDAO(db)

    async def record_sign_in(email: str):
        return await users.mark_email_verified(email, SecurityUtils.get_utc_now())

    # The account update shares the code's transaction; a failure leaves the code usable
    verified = await OTPService(db).verify_code(
        data.email, data.code, client_ip=client_ip, on_verified=record_sign_in
    )
    user, created = verified.account
    token = issue_session(user.id, claims_for_user(user))
    set_session_cookie(response, token)

    SecurityUtils.log_security_event(
        "session_issued",
        {"user_id": user.id, "new_user": created, "profile_completed": user.profile_completed},
        user_email=user.email,
        client_ip=client_ip
    )

    redirect_to = gate_config.landing_path if user.profile_completed else gate_config.complete_profile_path
    return VerifyCodeResponse(
        message="Successfully signed in!",
        redirect_to=redirect_to,
        user=UserOut.model_validate(user),
    )

@router.post("/logout")
async def logout(request: Request, response: Response):
    clear_session_cookie(response)
    SecurityUtils.log_security_event(
        "logout",
        {},
        client_ip=SecurityUtils.get_client_ip(request)
    )
    return {"message": "Logged out successfully"}
