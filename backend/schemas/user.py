import re
from typing import Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    email: EmailStr
    name: Optional[str] = None
    uf_email_verified: bool = Field(alias="ufEmailVerified")
    profile_completed: bool = Field(alias="profileCompleted")
    trust_score: int = Field(0, alias="trustScore")

class VerifyCodeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    redirect_to: str = Field(alias="redirectTo")
    user: UserOut

class CompleteProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    phone_number: str = Field(..., alias="phoneNumber")

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("phone_number")
    @classmethod
    def ten_digit_phone(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value)
        if len(digits) != 10:
            raise ValueError("Please enter a valid 10-digit phone number")
        return digits

class CompleteProfileResponse(BaseModel):
    message: str
    user: UserOut
