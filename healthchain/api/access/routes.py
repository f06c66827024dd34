"""
Access Routes

HTTP surface of the consent core: standing grants, consent tokens,
break-glass sessions, access decisions and the audit trail.

Subject-owned mutations always act on the authenticated user's own id;
the actor identity is the authenticated user's e-mail.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.audit import (
    AuditAction,
    AuditFilter,
    AuditLog,
    generate_emergency_report,
)
from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.access.emergency import EmergencySessionController
from healthchain.api.access.errors import AccessControlError, to_http_exception
from healthchain.api.access.evaluator import AccessEvaluator
from healthchain.api.access.grants import AccessGrantRegistry
from healthchain.api.access.levels import can_break_glass, can_read_all_audit
from healthchain.api.access.schemas import (
    AccessTokenResponse,
    AuditEntryResponse,
    AuditListResponse,
    ComplianceReportResponse,
    DecisionResponse,
    EmergencyActivateRequest,
    EmergencyCloseRequest,
    EmergencySessionResponse,
    EmergencyStatusResponse,
    EvaluateRequest,
    GrantCreateRequest,
    GrantListResponse,
    GrantResponse,
    IssuedTokenResponse,
    TokenIssueRequest,
    TokenValidateRequest,
)
from healthchain.api.access.tokens import EphemeralCredentialIssuer
from healthchain.api.auth.service import AuthService
from healthchain.api.db.models import AccessToken, EmergencySession, User
from healthchain.api.db.session import get_db
from healthchain.api.dependencies import get_admin_user, get_clinician_user, get_current_user

logger = logging.getLogger(__name__)


grants_router = APIRouter()
tokens_router = APIRouter()
emergency_router = APIRouter()
decisions_router = APIRouter()


def _seconds_left(expires_at: datetime, now: datetime) -> int:
    return max(0, int((expires_at - now).total_seconds()))


def _token_response(token: AccessToken, now: datetime) -> AccessTokenResponse:
    return AccessTokenResponse(
        id=token.id,
        subject_id=token.subject_id,
        level=token.level,
        status=token.status,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        seconds_remaining=_seconds_left(token.expires_at, now),
    )


def _session_response(session: EmergencySession, now: datetime) -> EmergencySessionResponse:
    live = session.is_live_at(now)
    return EmergencySessionResponse(
        id=session.id,
        subject_id=session.subject_id,
        activated_by=session.activated_by,
        activated_at=session.activated_at,
        expires_at=session.expires_at,
        status=session.status,
        justification=session.justification,
        closed_at=session.closed_at,
        is_live=live,
        seconds_remaining=_seconds_left(session.expires_at, now) if live else 0,
    )


# ==================== Grants ====================


@grants_router.post(
    "",
    response_model=GrantResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Grant standing access",
)
async def create_grant(
    data: GrantCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> GrantResponse:
    """
    Grant a doctor or hospital standing access to your records.

    One grant per grantee; revoke the existing one to change its level.
    """
    registry = AccessGrantRegistry(db, clock=clock)
    try:
        grant = await registry.grant(
            user.id,
            data.grantee_name,
            data.grantee_address,
            data.level,
            kind=data.kind,
            purpose=data.purpose,
            actor=user.email,
        )
    except AccessControlError as e:
        raise to_http_exception(e)
    return GrantResponse.model_validate(grant)


@grants_router.get(
    "",
    response_model=GrantListResponse,
    summary="List my grants",
)
async def list_grants(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> GrantListResponse:
    """Standing grants you have made."""
    grants = await AccessGrantRegistry(db).list_active(user.id)
    return GrantListResponse(
        grants=[GrantResponse.model_validate(g) for g in grants],
        total=len(grants),
    )


@grants_router.get(
    "/received",
    response_model=GrantListResponse,
    summary="List grants held by me",
)
async def list_received_grants(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> GrantListResponse:
    """Standing grants other subjects have made to you."""
    grants = await AccessGrantRegistry(db).list_for_grantee(user.email)
    return GrantListResponse(
        grants=[GrantResponse.model_validate(g) for g in grants],
        total=len(grants),
    )


@grants_router.delete(
    "/{grant_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke a grant",
)
async def revoke_grant(
    grant_id: UUID,
    reason: Optional[str] = Query(None, max_length=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Response:
    """
    Revoke a standing grant.

    Consent codes and emergency sessions are separate and stay as they are.
    """
    registry = AccessGrantRegistry(db, clock=clock)
    try:
        await registry.revoke(user.id, grant_id, reason=reason, actor=user.email)
    except AccessControlError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== Consent Tokens ====================


@tokens_router.post(
    "",
    response_model=IssuedTokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue consent code",
)
async def issue_token(
    data: TokenIssueRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> IssuedTokenResponse:
    """
    Issue a QR / one-time consent code for your records.

    Any code you issued before stops working immediately.
    """
    issuer = EphemeralCredentialIssuer(db, clock=clock)
    ttl = timedelta(minutes=data.ttl_minutes) if data.ttl_minutes else None
    try:
        issued = await issuer.issue(user.id, ttl, level=data.level, actor=user.email)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AccessControlError as e:
        raise to_http_exception(e)

    token = issued.token
    return IssuedTokenResponse(
        id=token.id,
        code=issued.code,
        display_code=issued.display_code,
        uri=issued.uri,
        level=token.level,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        expires_in_seconds=_seconds_left(token.expires_at, clock.now()),
        superseded=issued.superseded,
    )


@tokens_router.get(
    "",
    response_model=List[AccessTokenResponse],
    summary="List my consent codes",
)
async def list_tokens(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[AccessTokenResponse]:
    """Every code you have issued, newest first. Codes themselves are not shown."""
    now = clock.now()
    tokens = await EphemeralCredentialIssuer(db, clock=clock).list_tokens(user.id)
    return [_token_response(t, now) for t in tokens]


@tokens_router.get(
    "/current",
    response_model=Optional[AccessTokenResponse],
    summary="Get current consent code",
)
async def current_token(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Optional[AccessTokenResponse]:
    """Your currently usable code, or null. Remaining time is server-computed."""
    now = clock.now()
    token = await EphemeralCredentialIssuer(db, clock=clock).current(user.id, now)
    return _token_response(token, now) if token else None


@tokens_router.post(
    "/validate",
    response_model=AccessTokenResponse,
    summary="Validate consent code",
)
async def validate_token(
    data: TokenValidateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> AccessTokenResponse:
    """
    Check a code presented by a patient.

    Accepts the raw code, its dashed display form, or the scanned URI.
    """
    issuer = EphemeralCredentialIssuer(db, clock=clock)
    try:
        token = await issuer.validate(data.code, actor=user.email)
    except AccessControlError as e:
        raise to_http_exception(e)
    return _token_response(token, clock.now())


@tokens_router.delete(
    "/{token_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel consent code",
)
async def revoke_token(
    token_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Response:
    """Cancel one of your codes before it expires."""
    issuer = EphemeralCredentialIssuer(db, clock=clock)
    try:
        await issuer.revoke(user.id, token_id, actor=user.email)
    except AccessControlError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== Break-Glass ====================


@emergency_router.post(
    "/{subject_id}/activate",
    response_model=EmergencySessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Activate break-glass",
)
async def activate_emergency(
    subject_id: UUID,
    data: EmergencyActivateRequest,
    user: User = Depends(get_clinician_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> EmergencySessionResponse:
    """
    Open a time-boxed emergency override for a patient.

    Requires a clinical role and your password again. The patient is
    notified and every action is written to the audit log. The session
    must be closed with a clinical justification.
    """
    controller = EmergencySessionController(
        db,
        reauthenticate=AuthService(db).reauthenticate,
        clock=clock,
    )
    try:
        session = await controller.activate(subject_id, user.email, data.password)
    except AccessControlError as e:
        raise to_http_exception(e)
    return _session_response(session, clock.now())


@emergency_router.post(
    "/sessions/{session_id}/close",
    response_model=EmergencySessionResponse,
    summary="Close break-glass session",
)
async def close_emergency(
    session_id: UUID,
    data: EmergencyCloseRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> EmergencySessionResponse:
    """
    Close your emergency session with its clinical justification.

    Clinicians and admins may also close a colleague's session once it
    has expired, so a new one can be opened for the patient.
    """
    controller = EmergencySessionController(db, clock=clock)
    try:
        session = await controller.close(
            session_id,
            data.justification,
            closed_by=user.email,
            takeover=can_break_glass(user.user_role),
        )
    except AccessControlError as e:
        raise to_http_exception(e)
    return _session_response(session, clock.now())


@emergency_router.get(
    "/compliance",
    response_model=ComplianceReportResponse,
    summary="Break-glass compliance report",
)
async def emergency_compliance(
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ComplianceReportResponse:
    """Activations, closures and unjustified sessions over the last ``days``."""
    end = clock.now()
    start = end - timedelta(days=days)
    controller = EmergencySessionController(db, clock=clock)
    sessions = await controller.list_sessions(since=start, until=end)
    report = await generate_emergency_report(AuditLog(db, clock), sessions, start, end)
    return ComplianceReportResponse(**report.__dict__)


@emergency_router.get(
    "/{subject_id}/status",
    response_model=EmergencyStatusResponse,
    summary="Break-glass status",
)
async def emergency_status(
    subject_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> EmergencyStatusResponse:
    """Whether an emergency override is live for a patient."""
    if user.id != subject_id and not can_break_glass(user.user_role):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    now = clock.now()
    session = await EmergencySessionController(db, clock=clock).live_session(subject_id, now)
    return EmergencyStatusResponse(
        subject_id=subject_id,
        active=session is not None,
        session=_session_response(session, now) if session else None,
    )


# ==================== Decisions & Audit ====================


@decisions_router.post(
    "/access/evaluate",
    response_model=DecisionResponse,
    summary="Evaluate access",
)
async def evaluate_access(
    data: EvaluateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DecisionResponse:
    """
    Decide whether you may access a patient's records at a level.

    A denial is a normal answer, not an error.
    """
    evaluator = AccessEvaluator(db, clock=clock)
    try:
        result = await evaluator.evaluate(
            data.subject_id, user.email, data.level, code=data.code
        )
    except SQLAlchemyError:
        logger.exception("Access evaluation failed for %s", data.subject_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access decision unavailable, try again",
        )

    return DecisionResponse(
        decision=result.decision.value,
        reason=result.reason.value,
        subject_id=result.subject_id,
        requested_level=result.requested_level,
        evaluated_at=result.evaluated_at,
    )


@decisions_router.get(
    "/audit",
    response_model=AuditListResponse,
    summary="Query audit log",
)
async def query_audit(
    subject_id: Optional[UUID] = Query(None, description="Defaults to yourself"),
    action: Optional[List[AuditAction]] = Query(None),
    actor: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AuditListResponse:
    """
    Access history, oldest first.

    Patients read their own trail; admins may read any subject's.
    """
    subject_id = subject_id or user.id
    if subject_id != user.id and not can_read_all_audit(user.user_role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Audit access limited to your own records",
        )

    entries, total = await AuditLog(db).query(
        subject_id=subject_id,
        filters=AuditFilter(
            actions=action or [],
            actor_identity=actor,
            since=since,
            until=until,
        ),
        page=page,
        page_size=page_size,
    )
    return AuditListResponse(
        entries=[AuditEntryResponse.model_validate(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
    )


@decisions_router.get(
    "/audit/export",
    summary="Export audit log",
)
async def export_audit(
    start: datetime = Query(...),
    end: datetime = Query(...),
    subject_id: Optional[UUID] = Query(None),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Response:
    """JSON export with an integrity hash, for compliance review."""
    document = await AuditLog(db, clock).export(start, end, subject_id=subject_id)
    return Response(content=document, media_type="application/json")
