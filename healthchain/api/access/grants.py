"""
Access Grant Registry

Standing, subject-initiated grants. A grant lives until the subject
revokes it; there is no automatic expiry.

Invariants:
1. One grant per (subject, grantee address)
2. Only the owning subject's id can revoke a grant
3. Revoking a grant leaves consent tokens and emergency sessions alone
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.audit import AuditAction, AuditLog
from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.access.errors import DuplicateGrant, NotFound
from healthchain.api.access.levels import AccessLevel, GranteeKind
from healthchain.api.db.models import PermissionGrant
from healthchain.api.db.session import lock_subject

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """Canonical form of a grantee address (e-mail or wallet)."""
    return address.strip().lower()


class AccessGrantRegistry:
    """Durable store of standing grants between a subject and grantees."""

    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.clock = clock or get_clock()
        self.audit = audit or AuditLog(db, self.clock)

    async def grant(
        self,
        subject_id: UUID,
        grantee_name: str,
        grantee_address: str,
        level: AccessLevel,
        *,
        kind: GranteeKind = GranteeKind.DOCTOR,
        purpose: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PermissionGrant:
        """
        Grant standing access to a grantee.

        Args:
            subject_id: Subject (patient) granting access
            grantee_name: Display name of the grantee
            grantee_address: E-mail or wallet address identifying the grantee
            level: Access level conferred
            kind: Doctor, hospital or other
            purpose: Optional free-text purpose
            actor: Identity recorded in the audit entry (defaults to subject)

        Raises:
            NotFound: If the subject does not exist
            DuplicateGrant: If the grantee already holds a grant
        """
        address = normalize_address(grantee_address)
        level = AccessLevel(level)

        if not await lock_subject(self.db, subject_id):
            raise NotFound("Subject not found")

        existing = await self.find(subject_id, address)
        if existing:
            raise DuplicateGrant(
                f"{address} already holds a grant",
                details={"grant_id": str(existing.id)},
            )

        grant = PermissionGrant(
            subject_id=subject_id,
            grantee_name=grantee_name.strip(),
            grantee_address=address,
            grantee_kind=GranteeKind(kind).value,
            level=level.value,
            purpose=purpose,
            granted_at=self.clock.now(),
        )
        self.db.add(grant)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateGrant(f"{address} already holds a grant")

        await self.audit.append(
            AuditAction.GRANT,
            actor or str(subject_id),
            subject_id=subject_id,
            context_ref=str(grant.id),
            details=f"{level.value} to {address}"
            + (f" ({purpose})" if purpose else ""),
        )
        await self.db.commit()

        logger.info("Grant %s: %s -> %s (%s)", grant.id, subject_id, address, level.value)
        return grant

    async def revoke(
        self,
        subject_id: UUID,
        grant_id: UUID,
        *,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        """
        Revoke a standing grant.

        Raises:
            NotFound: If the grant does not exist or belongs to another subject
        """
        result = await self.db.execute(
            select(PermissionGrant).where(
                PermissionGrant.id == grant_id,
                PermissionGrant.subject_id == subject_id,
            )
        )
        grant = result.scalar_one_or_none()
        if not grant:
            raise NotFound("Grant not found")

        address, level = grant.grantee_address, grant.level
        await self.db.execute(
            delete(PermissionGrant).where(PermissionGrant.id == grant_id)
        )

        await self.audit.append(
            AuditAction.REVOKE,
            actor or str(subject_id),
            subject_id=subject_id,
            context_ref=str(grant_id),
            details=f"grant {level} from {address}"
            + (f": {reason}" if reason else ""),
        )
        await self.db.commit()

        logger.info("Revoked grant %s for %s", grant_id, subject_id)

    async def list_active(self, subject_id: UUID) -> List[PermissionGrant]:
        """All standing grants a subject has made, oldest first."""
        result = await self.db.execute(
            select(PermissionGrant)
            .where(PermissionGrant.subject_id == subject_id)
            .order_by(PermissionGrant.granted_at, PermissionGrant.grantee_address)
        )
        return list(result.scalars().all())

    async def list_for_grantee(self, grantee_address: str) -> List[PermissionGrant]:
        """All standing grants held by a grantee across subjects."""
        result = await self.db.execute(
            select(PermissionGrant)
            .where(PermissionGrant.grantee_address == normalize_address(grantee_address))
            .order_by(PermissionGrant.granted_at)
        )
        return list(result.scalars().all())

    async def find(
        self, subject_id: UUID, grantee_address: str
    ) -> Optional[PermissionGrant]:
        """Grant held by a grantee for one subject, if any."""
        result = await self.db.execute(
            select(PermissionGrant).where(
                PermissionGrant.subject_id == subject_id,
                PermissionGrant.grantee_address == normalize_address(grantee_address),
            )
        )
        return result.scalar_one_or_none()
