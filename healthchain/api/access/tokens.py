"""
Ephemeral Credential Issuer

Short-lived consent codes a subject shows as a QR code or reads out as
a one-time code to a walk-up doctor or hospital.

Invariants:
1. At most one active token per subject; issuing supersedes the old one
   in the same transaction
2. Expiry is decided against server time at validation, never by a timer
3. Validation does not consume the token
4. Codes carry 160 random bits; only their SHA-256 digest is stored
"""

import base64
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.audit import SYSTEM_ACTOR, AuditAction, AuditLog
from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.access.errors import Conflict, NotFound, TokenExpired, TokenRevoked
from healthchain.api.access.levels import AccessLevel, parse_level
from healthchain.api.config import settings
from healthchain.api.db.models import (
    TOKEN_ACTIVE,
    TOKEN_EXPIRED,
    TOKEN_REVOKED,
    AccessToken,
)
from healthchain.api.db.session import lock_subject

logger = logging.getLogger(__name__)


CODE_BYTES = 20      # 160 bits -> 32 base32 characters
DISPLAY_GROUP = 4

_SEPARATORS = re.compile(r"[\s\-_.]")


# ==================== Code Format ====================


def generate_code() -> str:
    """Generate a raw, unguessable consent code."""
    return base64.b32encode(secrets.token_bytes(CODE_BYTES)).decode().rstrip("=")


def format_code(code: str, group: int = DISPLAY_GROUP) -> str:
    """Display form of a code: fixed-width groups joined by dashes."""
    return "-".join(code[i:i + group] for i in range(0, len(code), group))


def normalize_code(text: str) -> str:
    """Raw canonical code from whatever the grantee typed or scanned."""
    if "/" in text:
        # Scanned QR URI
        text = text.rstrip("/").rsplit("/", 1)[-1]
    return _SEPARATORS.sub("", text).upper()


def digest_code(code: str) -> str:
    """Lookup key stored in place of the code."""
    return hashlib.sha256(code.encode()).hexdigest()


def emergency_uri(code: str) -> str:
    """QR-encodable URI for a code."""
    return f"{settings.EMERGENCY_URI_BASE.rstrip('/')}/{code}"


@dataclass
class IssuedToken:
    """A freshly issued token plus its one-time visible code."""

    token: AccessToken
    code: str
    superseded: List[UUID]

    @property
    def display_code(self) -> str:
        return format_code(self.code)

    @property
    def uri(self) -> str:
        return emergency_uri(self.code)


# ==================== Issuer ====================


class EphemeralCredentialIssuer:
    """Creates, validates and invalidates consent tokens."""

    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.clock = clock or get_clock()
        self.audit = audit or AuditLog(db, self.clock)

    async def issue(
        self,
        subject_id: UUID,
        ttl: Optional[timedelta] = None,
        *,
        level: Optional[AccessLevel] = None,
        actor: Optional[str] = None,
    ) -> IssuedToken:
        """
        Issue a new token, revoking any active one for the subject.

        Args:
            subject_id: Subject issuing the token
            ttl: Lifetime (default CONSENT_TOKEN_TTL_MINUTES)
            level: Level the token confers (default CONSENT_TOKEN_LEVEL)
            actor: Identity recorded in the audit entry (defaults to subject)

        Raises:
            ValueError: If ttl is not positive or above the configured maximum
            NotFound: If the subject does not exist
            Conflict: If a concurrent issue won the race
        """
        ttl = ttl if ttl is not None else timedelta(minutes=settings.CONSENT_TOKEN_TTL_MINUTES)
        if ttl <= timedelta(0):
            raise ValueError("Token lifetime must be positive")
        if ttl > timedelta(minutes=settings.CONSENT_TOKEN_MAX_TTL_MINUTES):
            raise ValueError(
                f"Token lifetime above {settings.CONSENT_TOKEN_MAX_TTL_MINUTES} minutes"
            )
        level = AccessLevel(level) if level else parse_level(settings.CONSENT_TOKEN_LEVEL)

        if not await lock_subject(self.db, subject_id):
            raise NotFound("Subject not found")

        now = self.clock.now()

        # Tokens already past expiry are expired, not superseded
        result = await self.db.execute(
            select(AccessToken).where(
                AccessToken.subject_id == subject_id,
                AccessToken.status == TOKEN_ACTIVE,
            )
        )
        superseded = []
        for previous in result.scalars().all():
            if previous.is_expired_at(now):
                await self._mark_expired(previous)
            else:
                superseded.append(previous.id)
        if superseded:
            await self.db.execute(
                update(AccessToken)
                .where(AccessToken.id.in_(superseded))
                .values(status=TOKEN_REVOKED, revoked_at=now)
                .execution_options(synchronize_session="fetch")
            )

        code = generate_code()
        token = AccessToken(
            subject_id=subject_id,
            code_digest=digest_code(code),
            level=level.value,
            status=TOKEN_ACTIVE,
            issued_at=now,
            expires_at=now + ttl,
        )
        self.db.add(token)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise Conflict("Concurrent token issue for subject")

        details = f"{level.value} until {token.expires_at.isoformat()}"
        if superseded:
            details += "; superseded " + ",".join(str(t) for t in superseded)
        await self.audit.append(
            AuditAction.TOKEN_ISSUED,
            actor or str(subject_id),
            subject_id=subject_id,
            context_ref=str(token.id),
            details=details,
        )
        await self.db.commit()

        logger.info(
            "Issued token %s for %s (superseded %d)", token.id, subject_id, len(superseded)
        )
        return IssuedToken(token=token, code=code, superseded=superseded)

    async def _lookup(self, code: str) -> Optional[AccessToken]:
        result = await self.db.execute(
            select(AccessToken).where(
                AccessToken.code_digest == digest_code(normalize_code(code))
            )
        )
        return result.scalar_one_or_none()

    async def validate(
        self,
        code: str,
        now: Optional[datetime] = None,
        *,
        actor: Optional[str] = None,
    ) -> AccessToken:
        """
        Validate a presented code.

        An active token found past expiry is moved to expired here, the
        only write validation performs besides its audit entry.

        Raises:
            NotFound: Code was never issued
            TokenRevoked: Token was superseded or cancelled
            TokenExpired: Token is past its expiry
        """
        now = now or self.clock.now()
        token = await self._lookup(code)

        if not token:
            raise NotFound("Unknown access code")

        if token.status == TOKEN_REVOKED:
            raise TokenRevoked("Access code was revoked")

        if token.status == TOKEN_EXPIRED:
            raise TokenExpired("Access code has expired")

        if token.is_expired_at(now):
            await self._mark_expired(token)
            await self.db.commit()
            raise TokenExpired("Access code has expired")

        await self.audit.append(
            AuditAction.TOKEN_VALIDATED,
            actor or SYSTEM_ACTOR,
            subject_id=token.subject_id,
            context_ref=str(token.id),
        )
        await self.db.commit()
        return token

    async def _mark_expired(self, token: AccessToken) -> None:
        token.status = TOKEN_EXPIRED
        await self.audit.append(
            AuditAction.TOKEN_EXPIRED,
            SYSTEM_ACTOR,
            subject_id=token.subject_id,
            context_ref=str(token.id),
            details=f"expired at {token.expires_at.isoformat()}",
        )

    async def revoke(
        self,
        subject_id: UUID,
        token_id: UUID,
        *,
        actor: Optional[str] = None,
    ) -> None:
        """
        Cancel a token before its expiry.

        Raises:
            NotFound: If the token does not exist or belongs to another subject
        """
        result = await self.db.execute(
            select(AccessToken).where(
                AccessToken.id == token_id,
                AccessToken.subject_id == subject_id,
            )
        )
        token = result.scalar_one_or_none()
        if not token:
            raise NotFound("Access token not found")

        if token.status != TOKEN_ACTIVE:
            return

        token.status = TOKEN_REVOKED
        token.revoked_at = self.clock.now()
        await self.audit.append(
            AuditAction.REVOKE,
            actor or str(subject_id),
            subject_id=subject_id,
            context_ref=str(token_id),
            details="access token cancelled",
        )
        await self.db.commit()
        logger.info("Revoked token %s for %s", token_id, subject_id)

    # ==================== Read Paths ====================

    async def resolve(self, code: str) -> Optional[AccessToken]:
        """Token for a code without validating or auditing it."""
        return await self._lookup(code)

    async def current(
        self, subject_id: UUID, now: Optional[datetime] = None
    ) -> Optional[AccessToken]:
        """The subject's usable token, if any. No side effects."""
        now = now or self.clock.now()
        result = await self.db.execute(
            select(AccessToken).where(
                AccessToken.subject_id == subject_id,
                AccessToken.status == TOKEN_ACTIVE,
            )
        )
        token = result.scalar_one_or_none()
        if token and not token.is_expired_at(now):
            return token
        return None

    async def list_tokens(self, subject_id: UUID) -> List[AccessToken]:
        """Every token a subject has issued, newest first."""
        result = await self.db.execute(
            select(AccessToken)
            .where(AccessToken.subject_id == subject_id)
            .order_by(AccessToken.issued_at.desc())
        )
        return list(result.scalars().all())

    # ==================== Housekeeping ====================

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Move overdue active tokens to expired.

        Reporting only: validation already treats them as expired.

        Returns:
            Number of tokens transitioned
        """
        now = now or self.clock.now()
        result = await self.db.execute(
            select(AccessToken).where(
                AccessToken.status == TOKEN_ACTIVE,
                AccessToken.expires_at <= now,
            )
        )
        overdue = list(result.scalars().all())
        for token in overdue:
            await self._mark_expired(token)
        if overdue:
            await self.db.commit()
            logger.info("Swept %d expired tokens", len(overdue))
        return len(overdue)
