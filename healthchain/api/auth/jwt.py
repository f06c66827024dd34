"""
JWT Bearer Tokens

Short-lived access tokens identify the actor for every access check;
refresh tokens only mint new access tokens. The ``email`` claim is the
actor identity written to the audit log.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

import jwt
from jwt.exceptions import InvalidTokenError

from healthchain.api.access.levels import UserRole
from healthchain.api.config import settings

ACCESS = "access"
REFRESH = "refresh"


def _encode(subject: UUID, token_type: str, lifetime: timedelta, **claims: Any) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(subject),
        "type": token_type,
        "iat": issued,
        "exp": issued + lifetime,
        "jti": uuid4().hex,
        **claims,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(user_id: UUID, email: str, role: str = UserRole.PATIENT.value) -> str:
    """
    Access token carrying the actor identity and role.

    Args:
        user_id: Account id
        email: Actor identity
        role: patient, doctor, hospital or admin
    """
    return _encode(
        user_id,
        ACCESS,
        timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        email=email,
        role=UserRole(role).value,
    )


def create_refresh_token(user_id: UUID) -> str:
    """Refresh token; carries no identity beyond the account id."""
    return _encode(user_id, REFRESH, timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))


def verify_token(token: str, token_type: str = ACCESS) -> Optional[Dict[str, Any]]:
    """
    Decode a token of the expected type.

    Returns None for a bad signature, an expired token, the wrong type
    or a payload without a subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError:
        return None

    if payload.get("type") != token_type:
        return None
    return payload


def get_token_expiry_seconds() -> int:
    """Access token lifetime in seconds."""
    return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
