"""
Authentication Schemas

Account and bearer-token payloads.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from healthchain.api.access.levels import UserRole


class UserRegisterRequest(BaseModel):
    """
    New account.

    The e-mail is the identity recorded in the audit log and the address
    patients name when granting access.
    """

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=100)
    display_name: Optional[str] = Field(None, max_length=200)
    role: UserRole = UserRole.PATIENT

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class UserLoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    """Bearer token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class UserResponse(BaseModel):
    """Account as seen by its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    display_name: Optional[str]
    role: UserRole
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime]


class AuthResponse(TokenResponse):
    """Login result: tokens plus the account."""

    user: UserResponse
