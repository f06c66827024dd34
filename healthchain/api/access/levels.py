"""
HealthChain - Access Levels and Roles

Defines the closed, totally ordered set of access levels a subject can
confer, and the account roles that decide who may use break-glass.
This is the authoritative source for level comparisons.
"""

from enum import Enum
from typing import Set


# ============================================================
# Access Levels
# ============================================================


class AccessLevel(str, Enum):
    """Access levels in ascending order of privilege."""

    VIEW_SUMMARY = "view_summary"
    VIEW_RECORDS = "view_records"
    EMERGENCY_OVERRIDE = "emergency_override"
    FULL_ACCESS = "full_access"

    @property
    def rank(self) -> int:
        return LEVEL_ORDER.index(self)

    def covers(self, requested: "AccessLevel") -> bool:
        """Check if holding this level satisfies a request for ``requested``."""
        return self.rank >= AccessLevel(requested).rank

    def __lt__(self, other):
        other = _coerce(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        other = _coerce(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        other = _coerce(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        other = _coerce(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank >= other.rank


LEVEL_ORDER = (
    AccessLevel.VIEW_SUMMARY,
    AccessLevel.VIEW_RECORDS,
    AccessLevel.EMERGENCY_OVERRIDE,
    AccessLevel.FULL_ACCESS,
)

# Highest level a live break-glass session can satisfy
EMERGENCY_SCOPE = AccessLevel.EMERGENCY_OVERRIDE


def _coerce(other):
    """Level for a comparison operand; plain strings must name a level."""
    if isinstance(other, AccessLevel):
        return other
    if isinstance(other, str):
        try:
            return AccessLevel(other)
        except ValueError:
            raise TypeError(f"Cannot compare access level with {other!r}")
    return NotImplemented


def parse_level(value: str) -> AccessLevel:
    """Parse a level name, accepting either the value or the member name."""
    try:
        return AccessLevel(value.lower())
    except ValueError:
        try:
            return AccessLevel[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown access level: {value}")


# ============================================================
# Roles
# ============================================================


class UserRole(str, Enum):
    """Account roles."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    ADMIN = "admin"


class GranteeKind(str, Enum):
    """Kind of party a standing grant names."""

    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    OTHER = "other"


# Roles allowed to initiate a break-glass override
BREAK_GLASS_ROLES: Set[UserRole] = {
    UserRole.DOCTOR,
    UserRole.HOSPITAL,
    UserRole.ADMIN,
}

# Roles allowed to read any subject's audit trail
AUDIT_READ_ALL_ROLES: Set[UserRole] = {
    UserRole.ADMIN,
}


def can_break_glass(role: UserRole) -> bool:
    """Check if a role may activate an emergency session."""
    return UserRole(role) in BREAK_GLASS_ROLES


def can_read_all_audit(role: UserRole) -> bool:
    """Check if a role may read audit entries of every subject."""
    return UserRole(role) in AUDIT_READ_ALL_ROLES
