"""
Access Schemas

Pydantic models for grants, consent tokens, break-glass sessions,
access decisions and audit queries.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from healthchain.api.access.levels import AccessLevel, GranteeKind


# ==================== Grants ====================


class GrantCreateRequest(BaseModel):
    """Grant standing access to a doctor or hospital."""

    grantee_name: str = Field(..., min_length=1, max_length=200)
    grantee_address: str = Field(
        ...,
        min_length=3,
        max_length=255,
        description="E-mail or wallet address the grantee authenticates with",
    )
    level: AccessLevel
    kind: GranteeKind = GranteeKind.DOCTOR
    purpose: Optional[str] = Field(None, max_length=500)


class GrantResponse(BaseModel):
    """Standing grant."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_id: UUID
    grantee_name: str
    grantee_address: str
    grantee_kind: GranteeKind
    level: AccessLevel
    purpose: Optional[str]
    granted_at: datetime


class GrantListResponse(BaseModel):
    """Grants list."""

    grants: List[GrantResponse]
    total: int


# ==================== Consent Tokens ====================


class TokenIssueRequest(BaseModel):
    """Issue a consent code. Supersedes the current one."""

    ttl_minutes: Optional[int] = Field(None, ge=1, description="Defaults to 10 minutes")
    level: Optional[AccessLevel] = None


class IssuedTokenResponse(BaseModel):
    """
    Freshly issued consent code.

    ``code`` is only ever returned here; the server keeps a digest.
    """

    id: UUID
    code: str
    display_code: str
    uri: str
    level: AccessLevel
    issued_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    superseded: List[UUID] = Field(default_factory=list)


class AccessTokenResponse(BaseModel):
    """Consent token state (without its code)."""

    id: UUID
    subject_id: UUID
    level: AccessLevel
    status: str
    issued_at: datetime
    expires_at: datetime
    seconds_remaining: int


class TokenValidateRequest(BaseModel):
    """Code as typed or scanned by the grantee."""

    code: str = Field(..., min_length=1, max_length=300)


# ==================== Break-Glass ====================


class EmergencyActivateRequest(BaseModel):
    """Break-glass activation. The password is re-checked on the spot."""

    password: str = Field(..., min_length=1)


class EmergencyCloseRequest(BaseModel):
    """Clinical justification for a break-glass event."""

    justification: str = Field("", max_length=5000)


class EmergencySessionResponse(BaseModel):
    """Break-glass session state."""

    id: UUID
    subject_id: UUID
    activated_by: str
    activated_at: datetime
    expires_at: datetime
    status: str
    justification: Optional[str]
    closed_at: Optional[datetime]
    is_live: bool
    seconds_remaining: int


class EmergencyStatusResponse(BaseModel):
    """Whether override access is currently live for a subject."""

    subject_id: UUID
    active: bool
    session: Optional[EmergencySessionResponse] = None


class ComplianceReportResponse(BaseModel):
    """Break-glass compliance report."""

    report_id: str
    report_type: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    summary: Dict[str, Any]
    details: List[Dict[str, Any]]
    integrity_hash: str


# ==================== Decisions ====================


class EvaluateRequest(BaseModel):
    """Access check for the calling actor."""

    subject_id: UUID
    level: AccessLevel
    code: Optional[str] = Field(None, max_length=300, description="Presented consent code")


class DecisionResponse(BaseModel):
    """
    Access decision.

    The reason names the authorization path only; why a request was
    denied is recorded in the audit log, not returned.
    """

    decision: str
    reason: str
    subject_id: UUID
    requested_level: AccessLevel
    evaluated_at: datetime


# ==================== Audit ====================


class AuditEntryResponse(BaseModel):
    """One audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    actor_identity: str
    subject_id: Optional[UUID]
    action: str
    context_ref: Optional[str]
    details: Optional[str]


class AuditListResponse(BaseModel):
    """Paginated audit entries."""

    entries: List[AuditEntryResponse]
    total: int
    page: int
    page_size: int
