"""
FastAPI Dependencies

Resolves the calling actor from the bearer token and gates routes by
account role.
"""

from typing import Callable
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.levels import BREAK_GLASS_ROLES, UserRole
from healthchain.api.auth.jwt import ACCESS, verify_token
from healthchain.api.auth.service import AuthService
from healthchain.api.db.models import User
from healthchain.api.db.session import get_db


security = HTTPBearer()


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    The account behind the bearer token.

    The role is read from the stored account, not the token, so a role
    change takes effect on the next request.
    """
    payload = verify_token(credentials.credentials, ACCESS)
    if not payload:
        raise _unauthenticated("Invalid or expired token")

    user = await AuthService(db).get_user_by_id(UUID(payload["sub"]))
    if not user or not user.is_active:
        raise _unauthenticated("User not found or inactive")
    return user


def require_roles(*roles: UserRole) -> Callable:
    """Dependency factory admitting only the given roles."""
    allowed = {UserRole(r) for r in roles}

    async def checker(user: User = Depends(get_current_user)) -> User:
        if user.user_role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(sorted(r.value for r in allowed))}",
            )
        return user

    return checker


get_admin_user = require_roles(UserRole.ADMIN)
get_clinician_user = require_roles(*BREAK_GLASS_ROLES)
