"""Database module."""

from healthchain.api.db.session import (
    get_db,
    get_session_maker,
    session_scope,
    init_db,
    close_db,
    lock_subject,
)
from healthchain.api.db.models import (
    Base,
    User,
    PermissionGrant,
    AccessToken,
    EmergencySession,
    AuditEntry,
)

__all__ = [
    "get_db",
    "get_session_maker",
    "session_scope",
    "init_db",
    "close_db",
    "lock_subject",
    "Base",
    "User",
    "PermissionGrant",
    "AccessToken",
    "EmergencySession",
    "AuditEntry",
]
