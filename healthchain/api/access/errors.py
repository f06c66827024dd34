"""
HealthChain - Access Control Exception Hierarchy

Structured error types raised by the consent, credential and
break-glass services. Every error carries a stable ``code`` for
programmatic handling and the HTTP status the API answers with.

Error Categories:
    - NotFound: unknown id, or an id owned by another subject
    - DuplicateGrant: grantee already holds a standing grant
    - AlreadyActive / AlreadyClosed: emergency session state conflicts
    - JustificationRequired: break-glass closure without a clinical note
    - TokenExpired / TokenRevoked: consent token no longer usable
    - Unauthorized: re-authentication step failed
    - Conflict: a concurrent write won the uniqueness race
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class AccessControlError(Exception):
    """
    Base exception for all access-control errors.

    Attributes:
        message: Human-readable error description
        code: Error code for programmatic handling
        details: Optional dict with additional context
        status_code: HTTP status the API maps this error to
    """

    code: str = "AccessControlError"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class NotFound(AccessControlError):
    """Referenced id does not exist or does not belong to the caller.

    Both cases share one error so callers cannot test whether an id exists.
    """

    code = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class DuplicateGrant(AccessControlError):
    """Grantee already holds a standing grant from this subject."""

    code = "DuplicateGrant"
    status_code = status.HTTP_409_CONFLICT


class AlreadyActive(AccessControlError):
    """Subject already has an emergency session that is not closed."""

    code = "AlreadyActive"
    status_code = status.HTTP_409_CONFLICT


class AlreadyClosed(AccessControlError):
    """Emergency session was closed before."""

    code = "AlreadyClosed"
    status_code = status.HTTP_409_CONFLICT


class JustificationRequired(AccessControlError):
    """Emergency session cannot close without a justification."""

    code = "JustificationRequired"
    status_code = 422


class TokenExpired(AccessControlError):
    """Consent token is past its expiry."""

    code = "Expired"
    status_code = status.HTTP_410_GONE


class TokenRevoked(AccessControlError):
    """Consent token was superseded or cancelled."""

    code = "Revoked"
    status_code = status.HTTP_410_GONE


class Unauthorized(AccessControlError):
    """Re-authentication challenge failed."""

    code = "Unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class Conflict(AccessControlError):
    """Concurrent write violated a uniqueness constraint."""

    code = "Conflict"
    status_code = status.HTTP_409_CONFLICT


def to_http_exception(error: AccessControlError) -> HTTPException:
    """Map an access-control error to the API response."""
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": error.message},
    )
