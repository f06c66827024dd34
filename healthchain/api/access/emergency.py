"""
Emergency Session Controller

Break-glass workflow: a privileged actor re-authenticates, opens a
time-boxed override for one subject, and must close it with a clinical
justification.

Invariants:
1. At most one unclosed session per subject
2. A session only reaches closed with a non-blank justification
3. Expiry ends access but never closes the session; an expired,
   unjustified session stays open and blocks re-activation until the
   activator explains it
4. The subject can read a session, never edit it
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.audit import AuditAction, AuditLog
from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.access.errors import (
    AlreadyActive,
    AlreadyClosed,
    JustificationRequired,
    NotFound,
    Unauthorized,
)
from healthchain.api.config import settings
from healthchain.api.db.models import SESSION_ACTIVE, SESSION_CLOSED, EmergencySession
from healthchain.api.db.session import lock_subject

logger = logging.getLogger(__name__)


# (actor identity, credential) -> re-authentication passed
Reauthenticator = Callable[[str, str], Awaitable[bool]]


class EmergencySessionController:
    """Orchestrates activation, expiry and closure of break-glass sessions."""

    def __init__(
        self,
        db: AsyncSession,
        reauthenticate: Optional[Reauthenticator] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
        duration: Optional[timedelta] = None,
    ):
        self.db = db
        self.reauthenticate = reauthenticate
        self.clock = clock or get_clock()
        self.audit = audit or AuditLog(db, self.clock)
        self.duration = duration or timedelta(minutes=settings.EMERGENCY_SESSION_MINUTES)

    async def activate(
        self,
        subject_id: UUID,
        activated_by: str,
        credential: Optional[str] = None,
    ) -> EmergencySession:
        """
        Open a break-glass session.

        Args:
            subject_id: Subject whose consent is bypassed
            activated_by: Identity of the privileged actor
            credential: Secret for the re-authentication challenge

        Raises:
            Unauthorized: Re-authentication failed (the attempt is audited)
            NotFound: Subject does not exist
            AlreadyActive: Subject already has an unclosed session
        """
        if not await self._challenge(activated_by, credential):
            await self.audit.append(
                AuditAction.ACCESS_DENIED,
                activated_by,
                subject_id=subject_id,
                details="emergency activation aborted: re-authentication failed",
            )
            await self.db.commit()
            logger.warning(
                "Break-glass re-authentication failed for %s on %s", activated_by, subject_id
            )
            raise Unauthorized("Re-authentication failed")

        if not await lock_subject(self.db, subject_id):
            raise NotFound("Subject not found")

        existing = await self._open_session(subject_id)
        if existing:
            raise AlreadyActive(
                "Close the open emergency session first",
                details={"session_id": str(existing.id)},
            )

        now = self.clock.now()
        session = EmergencySession(
            subject_id=subject_id,
            activated_by=activated_by,
            activated_at=now,
            expires_at=now + self.duration,
            status=SESSION_ACTIVE,
        )
        self.db.add(session)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise AlreadyActive("Close the open emergency session first")

        await self.audit.append(
            AuditAction.EMERGENCY_ACTIVATED,
            activated_by,
            subject_id=subject_id,
            context_ref=str(session.id),
            details=f"expires {session.expires_at.isoformat()}",
        )
        await self.db.commit()

        logger.warning("Break-glass session %s opened by %s for %s", session.id, activated_by, subject_id)
        return session

    async def _challenge(self, actor: str, credential: Optional[str]) -> bool:
        if self.reauthenticate is None:
            return False
        if not credential:
            return False
        return await self.reauthenticate(actor, credential)

    async def close(
        self,
        session_id: UUID,
        justification: str,
        *,
        closed_by: Optional[str] = None,
        takeover: bool = False,
    ) -> EmergencySession:
        """
        Close a session with its clinical justification.

        Args:
            session_id: Session to close
            justification: Required clinical note
            closed_by: When given, must be the activator unless ``takeover``
            takeover: Let ``closed_by`` close someone else's session once it
                has expired, so an abandoned session cannot block the subject

        Raises:
            JustificationRequired: Justification is empty or blank
            NotFound: Unknown session, or not closable by ``closed_by``
            AlreadyClosed: Session was closed before
        """
        if not justification or not justification.strip():
            raise JustificationRequired("A clinical justification is required to close")

        now = self.clock.now()
        session = await self.get(session_id)
        if not session:
            raise NotFound("Emergency session not found")

        taken_over = closed_by is not None and session.activated_by != closed_by
        if taken_over and not (takeover and now >= session.expires_at):
            raise NotFound("Emergency session not found")

        if session.status == SESSION_CLOSED:
            raise AlreadyClosed("Emergency session already closed")

        session.status = SESSION_CLOSED
        session.justification = justification.strip()
        session.closed_at = now

        details = session.justification
        if taken_over:
            details = f"closed for {session.activated_by}: {details}"
        await self.audit.append(
            AuditAction.EMERGENCY_CLOSED,
            closed_by or session.activated_by,
            subject_id=session.subject_id,
            context_ref=str(session.id),
            details=details,
        )
        await self.db.commit()

        if taken_over:
            logger.warning(
                "Break-glass session %s of %s closed by %s after expiry",
                session.id, session.activated_by, closed_by,
            )
        else:
            logger.info("Break-glass session %s closed", session.id)
        return session

    async def is_active(self, subject_id: UUID, now: Optional[datetime] = None) -> bool:
        """Whether a session currently grants override access. Read-only."""
        return await self.live_session(subject_id, now) is not None

    async def live_session(
        self, subject_id: UUID, now: Optional[datetime] = None
    ) -> Optional[EmergencySession]:
        """The unclosed, unexpired session for a subject, if any."""
        now = now or self.clock.now()
        session = await self._open_session(subject_id)
        if session and session.is_live_at(now):
            return session
        return None

    async def _open_session(self, subject_id: UUID) -> Optional[EmergencySession]:
        result = await self.db.execute(
            select(EmergencySession).where(
                EmergencySession.subject_id == subject_id,
                EmergencySession.status == SESSION_ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, session_id: UUID) -> Optional[EmergencySession]:
        """Session by id."""
        result = await self.db.execute(
            select(EmergencySession).where(EmergencySession.id == session_id)
        )
        return result.scalar_one_or_none()

    # ==================== Monitoring ====================

    async def list_sessions(
        self,
        subject_id: Optional[UUID] = None,
        activated_by: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[EmergencySession]:
        """Sessions matching the filters, newest first."""
        stmt = select(EmergencySession)
        if subject_id:
            stmt = stmt.where(EmergencySession.subject_id == subject_id)
        if activated_by:
            stmt = stmt.where(EmergencySession.activated_by == activated_by)
        if since:
            stmt = stmt.where(EmergencySession.activated_at >= since)
        if until:
            stmt = stmt.where(EmergencySession.activated_at <= until)

        result = await self.db.execute(stmt.order_by(EmergencySession.activated_at.desc()))
        return list(result.scalars().all())

    async def overdue_justifications(
        self, now: Optional[datetime] = None
    ) -> List[EmergencySession]:
        """Expired sessions nobody has closed yet."""
        now = now or self.clock.now()
        result = await self.db.execute(
            select(EmergencySession)
            .where(
                EmergencySession.status == SESSION_ACTIVE,
                EmergencySession.expires_at <= now,
            )
            .order_by(EmergencySession.expires_at)
        )
        return list(result.scalars().all())
