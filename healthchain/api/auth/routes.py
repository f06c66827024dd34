"""
Authentication Routes

Registration, login, token refresh and the caller's own account.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.errors import AccessControlError, to_http_exception
from healthchain.api.auth.schemas import (
    AuthResponse,
    RefreshTokenRequest,
    TokenResponse,
    UserLoginRequest,
    UserRegisterRequest,
    UserResponse,
)
from healthchain.api.auth.service import AuthService
from healthchain.api.db.models import User
from healthchain.api.db.session import get_db
from healthchain.api.dependencies import get_current_user


router = APIRouter()


def get_auth_service(db: AsyncSession = Depends(get_db)) -> AuthService:
    return AuthService(db)


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an account",
)
async def register(
    data: UserRegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """
    Register a patient, doctor or hospital account.

    - **email**: Unique; doubles as the identity in every audit entry
    - **password**: Minimum 8 characters
    - **role**: patient (default), doctor or hospital
    """
    try:
        user = await auth_service.register(data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AccessControlError as e:
        raise to_http_exception(e)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=AuthResponse, summary="Log in")
async def login(
    data: UserLoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Exchange e-mail and password for a bearer token pair."""
    try:
        user = await auth_service.authenticate(data.email, data.password)
    except AccessControlError as e:
        raise to_http_exception(e)

    access_token, refresh_token, expires_in = auth_service.create_tokens(user)
    return AuthResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        user=UserResponse.model_validate(user),
    )


@router.post("/refresh", response_model=TokenResponse, summary="Refresh tokens")
async def refresh(
    data: RefreshTokenRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    try:
        access_token, refresh_token, expires_in = await auth_service.refresh_tokens(
            data.refresh_token
        )
    except AccessControlError as e:
        raise to_http_exception(e)

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
    )


@router.get("/me", response_model=UserResponse, summary="Current account")
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)
