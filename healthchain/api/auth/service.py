"""
Authentication Service

Accounts, password checks and bearer tokens. Also provides the fresh
credential check the break-glass flow runs before opening a session.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.errors import Conflict, Unauthorized
from healthchain.api.access.levels import UserRole
from healthchain.api.auth.jwt import (
    REFRESH,
    create_access_token,
    create_refresh_token,
    get_token_expiry_seconds,
    verify_token,
)
from healthchain.api.auth.schemas import UserRegisterRequest
from healthchain.api.db.models import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """bcrypt hash of a password."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: str) -> bool:
    """Compare a password against its bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


class AuthService:
    """Account lifecycle and credential checks."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(self, data: UserRegisterRequest) -> User:
        """
        Create an account.

        Raises:
            ValueError: Admin role requested; admins are provisioned out of band
            Conflict: E-mail already registered
        """
        if data.role == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot self-register")

        email = data.email.lower()
        if await self.get_user_by_email(email):
            raise Conflict("Email already registered")

        user = User(
            email=email,
            password_hash=hash_password(data.password),
            display_name=data.display_name,
            role=data.role.value,
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise Conflict("Email already registered")
        await self.db.commit()

        logger.info("Registered %s account %s", user.role, user.email)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        """
        Password login.

        Raises:
            Unauthorized: Unknown e-mail, inactive account or wrong password
        """
        user = await self._check(email, password)
        if user is None:
            raise Unauthorized("Invalid email or password")

        user.last_login_at = datetime.now(timezone.utc)
        await self.db.commit()
        return user

    async def reauthenticate(self, email: str, password: str) -> bool:
        """
        Fresh credential check right before a break-glass activation.

        Does not touch ``last_login_at``; it is a challenge, not a login.
        """
        ok = await self._check(email, password) is not None
        if not ok:
            logger.warning("Re-authentication failed for %s", email)
        return ok

    async def _check(self, email: str, password: str) -> Optional[User]:
        user = await self.get_user_by_email(email.lower())
        if user and user.is_active and check_password(password, user.password_hash):
            return user
        return None

    def create_tokens(self, user: User) -> Tuple[str, str, int]:
        """(access token, refresh token, access lifetime in seconds)."""
        return (
            create_access_token(user.id, user.email, user.role),
            create_refresh_token(user.id),
            get_token_expiry_seconds(),
        )

    async def refresh_tokens(self, refresh_token: str) -> Tuple[str, str, int]:
        """
        Exchange a refresh token for a new pair.

        Raises:
            Unauthorized: Invalid or expired token, or the account is gone
        """
        payload = verify_token(refresh_token, REFRESH)
        user = await self.get_user_by_id(UUID(payload["sub"])) if payload else None
        if not user or not user.is_active:
            raise Unauthorized("Invalid or expired refresh token")
        return self.create_tokens(user)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()
