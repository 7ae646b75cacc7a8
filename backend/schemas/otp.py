from pydantic import BaseModel, EmailStr, Field

class SendCodeRequest(BaseModel):
    email: EmailStr

class SendCodeResponse(BaseModel):
    success: bool = True
    message: str

class VerifyCodeRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=16)

class ErrorResponse(BaseModel):
    error: str
    reason: str
