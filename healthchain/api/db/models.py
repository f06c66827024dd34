"""
SQLAlchemy ORM Models

Database models for the HealthChain access-control core.

Tables:
- users: accounts (patients, doctors, hospitals, admins)
- permission_grants: standing subject-initiated grants
- access_tokens: short-lived consent codes (QR / OTP)
- emergency_sessions: break-glass overrides
- audit_log: append-only access events
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from healthchain.api.access.levels import AccessLevel, GranteeKind, UserRole


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamp on every backend.

    SQLite drops tzinfo on the way out; values are normalised to UTC going
    in and re-tagged as UTC coming back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Status values
TOKEN_ACTIVE = "active"
TOKEN_EXPIRED = "expired"
TOKEN_REVOKED = "revoked"

SESSION_ACTIVE = "active"
SESSION_CLOSED = "closed"


class User(Base):
    """User account model."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.PATIENT.value, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    @property
    def user_role(self) -> UserRole:
        return UserRole(self.role)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class PermissionGrant(Base):
    """Standing grant from a subject to a named grantee.

    Rows are deleted on revocation; the audit log keeps the history.
    """

    __tablename__ = "permission_grants"
    __table_args__ = (
        UniqueConstraint("subject_id", "grantee_address", name="uq_grants_subject_grantee"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Grantee identity
    grantee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    grantee_address: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    grantee_kind: Mapped[str] = mapped_column(
        String(20), default=GranteeKind.DOCTOR.value, nullable=False
    )

    level: Mapped[str] = mapped_column(String(30), nullable=False)
    purpose: Mapped[Optional[str]] = mapped_column(Text)

    granted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    @property
    def access_level(self) -> AccessLevel:
        return AccessLevel(self.level)

    def __repr__(self) -> str:
        return f"<PermissionGrant {self.grantee_address} {self.level}>"


class AccessToken(Base):
    """Short-lived consent code issued by a subject.

    Only the SHA-256 digest of the code is stored.
    """

    __tablename__ = "access_tokens"
    __table_args__ = (
        # At most one active token per subject
        Index(
            "uq_access_tokens_active_subject",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    code_digest: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    level: Mapped[str] = mapped_column(String(30), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=TOKEN_ACTIVE, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    @property
    def access_level(self) -> AccessLevel:
        return AccessLevel(self.level)

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        return f"<AccessToken {self.id} {self.status}>"


class EmergencySession(Base):
    """Break-glass override for one subject."""

    __tablename__ = "emergency_sessions"
    __table_args__ = (
        # At most one unclosed session per subject
        Index(
            "uq_emergency_sessions_active_subject",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activated_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    activated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    justification: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=SESSION_ACTIVE, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    def is_live_at(self, now: datetime) -> bool:
        """Open and not past its hard expiry."""
        return self.status == SESSION_ACTIVE and now < self.expires_at

    def __repr__(self) -> str:
        return f"<EmergencySession {self.id} {self.status}>"


class AuditEntry(Base):
    """Immutable access event. Never updated or deleted."""

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_subject_order", "subject_id", "timestamp", "id"),
        Index("ix_audit_log_order", "timestamp", "id"),
    )

    # Sequence id breaks timestamp ties
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    actor_identity: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subject_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    action: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    context_ref: Mapped[Optional[str]] = mapped_column(String(100))
    details: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.id} {self.action}>"
