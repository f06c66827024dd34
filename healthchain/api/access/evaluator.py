"""
Access Evaluator

The single decision point for reads of a subject's records.
All access checks flow through this path; decisions are evaluated,
not trusted.

Decision order:
1. Standing grant at or above the requested level
2. Presented consent token of this subject covering the level
3. Live emergency session, for requests up to the override scope
4. Deny

Every call writes exactly one audit entry. The evaluator never changes
grant, token or session state; a token found past expiry is treated as
expired without being rewritten.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.audit import AuditAction, AuditLog
from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.access.emergency import EmergencySessionController
from healthchain.api.access.grants import AccessGrantRegistry
from healthchain.api.access.levels import EMERGENCY_SCOPE, AccessLevel
from healthchain.api.access.tokens import EphemeralCredentialIssuer
from healthchain.api.db.models import TOKEN_ACTIVE, TOKEN_EXPIRED, TOKEN_REVOKED

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Outcome of an access check."""
    ALLOW = "allow"
    DENY = "deny"


class DecisionReason(str, Enum):
    """Authorization path that produced the decision."""
    STANDING_GRANT = "standing_grant"
    EPHEMERAL_TOKEN = "ephemeral_token"
    EMERGENCY_OVERRIDE = "emergency_override"
    NO_AUTHORIZATION = "no_authorization"


@dataclass(frozen=True)
class AccessDecision:
    """Result returned to the caller. ``detail`` stays internal."""

    decision: Decision
    reason: DecisionReason
    subject_id: UUID
    actor_identity: str
    requested_level: AccessLevel
    evaluated_at: datetime
    context_ref: Optional[str] = None
    detail: Optional[str] = None
    audit_entry_id: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


class AccessEvaluator:
    """Pure read-and-decide over grants, tokens and emergency sessions."""

    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.clock = clock or get_clock()
        self.audit = audit or AuditLog(db, self.clock)
        self.grants = AccessGrantRegistry(db, self.audit, self.clock)
        self.tokens = EphemeralCredentialIssuer(db, self.audit, self.clock)
        self.emergency = EmergencySessionController(db, audit=self.audit, clock=self.clock)

    async def evaluate(
        self,
        subject_id: UUID,
        actor_identity: str,
        requested_level: AccessLevel,
        *,
        code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """
        Decide whether an actor may access a subject's records.

        Business outcomes are returned, never raised. Storage errors
        propagate so no partial decision is ever returned.
        """
        now = now or self.clock.now()
        requested_level = AccessLevel(requested_level)

        decision, reason, context_ref, detail = await self._decide(
            subject_id, actor_identity, requested_level, code, now
        )

        action = (
            AuditAction.ACCESS_ALLOWED if decision == Decision.ALLOW
            else AuditAction.ACCESS_DENIED
        )
        entry = await self.audit.append(
            action,
            actor_identity,
            subject_id=subject_id,
            context_ref=context_ref,
            details=f"{requested_level.value} via {reason.value}: {detail}",
        )
        await self.db.commit()

        if decision == Decision.DENY:
            logger.warning(
                "Access denied: %s -> %s (%s): %s",
                actor_identity, subject_id, requested_level.value, detail,
            )

        return AccessDecision(
            decision=decision,
            reason=reason,
            subject_id=subject_id,
            actor_identity=actor_identity,
            requested_level=requested_level,
            evaluated_at=now,
            context_ref=context_ref,
            detail=detail,
            audit_entry_id=entry.id,
        )

    async def _decide(
        self,
        subject_id: UUID,
        actor_identity: str,
        requested_level: AccessLevel,
        code: Optional[str],
        now: datetime,
    ) -> Tuple[Decision, DecisionReason, Optional[str], str]:
        notes = []

        # 1. Standing grant
        grant = await self.grants.find(subject_id, actor_identity)
        if grant:
            if grant.access_level.covers(requested_level):
                return (
                    Decision.ALLOW,
                    DecisionReason.STANDING_GRANT,
                    str(grant.id),
                    f"grant level {grant.level}",
                )
            notes.append(f"grant level {grant.level} below {requested_level.value}")
        else:
            notes.append("no standing grant")

        # 2. Presented consent token
        if code:
            token = await self.tokens.resolve(code)
            if not token:
                notes.append("unknown token")
            elif token.subject_id != subject_id:
                notes.append("token belongs to another subject")
            elif token.status == TOKEN_REVOKED:
                notes.append("token revoked")
            elif token.status == TOKEN_EXPIRED or token.is_expired_at(now):
                notes.append("token expired")
            elif token.status == TOKEN_ACTIVE and token.access_level.covers(requested_level):
                return (
                    Decision.ALLOW,
                    DecisionReason.EPHEMERAL_TOKEN,
                    str(token.id),
                    f"token level {token.level}",
                )
            else:
                notes.append(f"token level {token.level} below {requested_level.value}")

        # 3. Break-glass
        session = await self.emergency.live_session(subject_id, now)
        if session:
            if requested_level <= EMERGENCY_SCOPE:
                return (
                    Decision.ALLOW,
                    DecisionReason.EMERGENCY_OVERRIDE,
                    str(session.id),
                    f"emergency session opened by {session.activated_by}",
                )
            notes.append(f"{requested_level.value} exceeds emergency scope")

        return (
            Decision.DENY,
            DecisionReason.NO_AUTHORIZATION,
            None,
            "; ".join(notes),
        )
