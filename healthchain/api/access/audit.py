"""
HealthChain - Audit Log

Append-only trail of every access-relevant event: grants, revocations,
consent tokens, break-glass sessions and every access decision.
Supports compliance review (HIPAA access accounting, GDPR Art. 30).

The AuditLog exposes exactly one write, ``append``. There is no update
or delete path.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from healthchain.api.access.clock import Clock, get_clock
from healthchain.api.db.models import SESSION_CLOSED, AuditEntry


logger = logging.getLogger(__name__)

# Rows fetched per round trip when reading a whole period
EXPORT_BATCH_SIZE = 1000


# ============================================================
# Audit Actions
# ============================================================


class AuditAction(str, Enum):
    """Categories of auditable events."""

    GRANT = "grant"
    REVOKE = "revoke"
    TOKEN_ISSUED = "token_issued"
    TOKEN_VALIDATED = "token_validated"
    TOKEN_EXPIRED = "token_expired"
    EMERGENCY_ACTIVATED = "emergency_activated"
    EMERGENCY_CLOSED = "emergency_closed"
    ACCESS_DENIED = "access_denied"
    ACCESS_ALLOWED = "access_allowed"


class AuditSeverity(str, Enum):
    """Severity level of audit event."""

    LOW = "low"           # Routine operations
    MEDIUM = "medium"     # Notable actions
    HIGH = "high"         # Sensitive actions
    CRITICAL = "critical" # Break-glass events


ACTION_SEVERITY: Dict[AuditAction, AuditSeverity] = {
    AuditAction.ACCESS_ALLOWED: AuditSeverity.LOW,
    AuditAction.TOKEN_VALIDATED: AuditSeverity.LOW,
    AuditAction.TOKEN_EXPIRED: AuditSeverity.LOW,
    AuditAction.GRANT: AuditSeverity.MEDIUM,
    AuditAction.TOKEN_ISSUED: AuditSeverity.MEDIUM,
    AuditAction.REVOKE: AuditSeverity.MEDIUM,
    AuditAction.ACCESS_DENIED: AuditSeverity.HIGH,
    AuditAction.EMERGENCY_ACTIVATED: AuditSeverity.CRITICAL,
    AuditAction.EMERGENCY_CLOSED: AuditSeverity.CRITICAL,
}


def get_action_severity(action: AuditAction) -> AuditSeverity:
    """Get severity for an action."""
    return ACTION_SEVERITY.get(action, AuditSeverity.MEDIUM)


# Actor recorded for events the system performs on its own
SYSTEM_ACTOR = "system"


# ============================================================
# Serialisation
# ============================================================


def entry_to_dict(entry: AuditEntry) -> Dict[str, Any]:
    """Convert an entry to a plain dict for logs and exports."""
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "actor_identity": entry.actor_identity,
        "subject_id": str(entry.subject_id) if entry.subject_id else None,
        "action": entry.action,
        "context_ref": entry.context_ref,
        "details": entry.details,
        "severity": get_action_severity(AuditAction(entry.action)).value,
    }


def compute_entry_hash(entry: AuditEntry) -> str:
    """Compute SHA256 hash for integrity verification."""
    content = (
        f"{entry.id}{entry.timestamp.isoformat()}{entry.actor_identity}"
        f"{entry.subject_id or ''}{entry.action}{entry.context_ref or ''}{entry.details or ''}"
    )
    return hashlib.sha256(content.encode()).hexdigest()


# ============================================================
# Query Filters
# ============================================================


@dataclass
class AuditFilter:
    """Optional filters for audit queries."""

    actions: List[AuditAction] = field(default_factory=list)
    actor_identity: Optional[str] = None
    context_ref: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


# ============================================================
# Audit Log
# ============================================================


class AuditLog:
    """
    Central append-only audit sink.

    All audit entries flow through this class. Entries are added to the
    caller's transaction and become durable when it commits.
    """

    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or get_clock()

    async def append(
        self,
        action: AuditAction,
        actor_identity: str,
        *,
        subject_id: Optional[uuid.UUID] = None,
        context_ref: Optional[str] = None,
        details: Optional[str] = None,
    ) -> AuditEntry:
        """Record one event. Timestamp and sequence id are server-assigned."""
        entry = AuditEntry(
            timestamp=self.clock.now(),
            actor_identity=actor_identity,
            subject_id=subject_id,
            action=AuditAction(action).value,
            context_ref=context_ref,
            details=details,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "AUDIT",
            extra={
                "audit_event": entry_to_dict(entry),
                "event_hash": compute_entry_hash(entry),
            },
        )
        return entry

    def _filtered(self, stmt, subject_id: Optional[uuid.UUID], filters: AuditFilter):
        if subject_id is not None:
            stmt = stmt.where(AuditEntry.subject_id == subject_id)
        if filters.actions:
            stmt = stmt.where(
                AuditEntry.action.in_([AuditAction(a).value for a in filters.actions])
            )
        if filters.actor_identity:
            stmt = stmt.where(AuditEntry.actor_identity == filters.actor_identity)
        if filters.context_ref:
            stmt = stmt.where(AuditEntry.context_ref == filters.context_ref)
        if filters.since:
            stmt = stmt.where(AuditEntry.timestamp >= filters.since)
        if filters.until:
            stmt = stmt.where(AuditEntry.timestamp <= filters.until)
        return stmt

    async def query(
        self,
        subject_id: Optional[uuid.UUID] = None,
        filters: Optional[AuditFilter] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[AuditEntry], int]:
        """
        Query audit entries, oldest first.

        Returns:
            Tuple of (entries on the requested page, total matching)
        """
        filters = filters or AuditFilter()

        total = await self.db.scalar(
            self._filtered(select(func.count(AuditEntry.id)), subject_id, filters)
        )

        stmt = (
            self._filtered(select(AuditEntry), subject_id, filters)
            .order_by(AuditEntry.timestamp, AuditEntry.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total or 0

    async def count(self, subject_id: Optional[uuid.UUID] = None) -> int:
        """Count entries, optionally for one subject."""
        return await self.db.scalar(
            self._filtered(select(func.count(AuditEntry.id)), subject_id, AuditFilter())
        ) or 0

    async def fetch_all(
        self,
        subject_id: Optional[uuid.UUID] = None,
        filters: Optional[AuditFilter] = None,
    ) -> List[AuditEntry]:
        """Every matching entry, oldest first, read in batches."""
        entries: List[AuditEntry] = []
        page = 1
        while True:
            batch, total = await self.query(
                subject_id=subject_id,
                filters=filters,
                page=page,
                page_size=EXPORT_BATCH_SIZE,
            )
            entries.extend(batch)
            if not batch or len(entries) >= total:
                return entries
            page += 1

    async def export(
        self,
        start_time: datetime,
        end_time: datetime,
        subject_id: Optional[uuid.UUID] = None,
        include_hash: bool = True,
    ) -> str:
        """Export every entry for a period as JSON, with an integrity hash."""
        entries = await self.fetch_all(
            subject_id=subject_id,
            filters=AuditFilter(since=start_time, until=end_time),
        )

        export_data = {
            "export_timestamp": self.clock.now().isoformat(),
            "period_start": start_time.isoformat(),
            "period_end": end_time.isoformat(),
            "subject_id": str(subject_id) if subject_id else None,
            "event_count": len(entries),
            "events": [
                {**entry_to_dict(e), "hash": compute_entry_hash(e)} for e in entries
            ],
        }
        if include_hash:
            content = json.dumps(export_data, sort_keys=True, default=str)
            export_data["integrity_hash"] = hashlib.sha256(content.encode()).hexdigest()

        return json.dumps(export_data, indent=2, default=str)


def verify_export(document: str) -> bool:
    """Check an export's integrity hash against its content."""
    data = json.loads(document)
    expected = data.pop("integrity_hash", None)
    if expected is None:
        return False
    content = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest() == expected


# ============================================================
# Compliance Reports
# ============================================================


@dataclass
class ComplianceReport:
    """Structured compliance report."""

    report_id: str
    report_type: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    summary: Dict[str, Any]
    details: List[Dict[str, Any]]
    integrity_hash: str


async def generate_emergency_report(
    audit_log: AuditLog,
    sessions: Sequence[Any],
    start_time: datetime,
    end_time: datetime,
) -> ComplianceReport:
    """
    Generate a break-glass compliance report.

    ``sessions`` are the emergency sessions activated in the period.
    Sessions past expiry that were never closed are the compliance gap
    this report exists to surface.
    """
    events = await audit_log.fetch_all(
        filters=AuditFilter(
            actions=[
                AuditAction.EMERGENCY_ACTIVATED,
                AuditAction.EMERGENCY_CLOSED,
            ],
            since=start_time,
            until=end_time,
        ),
    )
    now = audit_log.clock.now()

    activations = [e for e in events if e.action == AuditAction.EMERGENCY_ACTIVATED.value]
    closures = [e for e in events if e.action == AuditAction.EMERGENCY_CLOSED.value]
    unjustified = [
        s for s in sessions
        if s.status != SESSION_CLOSED and now >= s.expires_at
    ]

    summary = {
        "activations": len(activations),
        "closures": len(closures),
        "open_sessions": len([s for s in sessions if s.status != SESSION_CLOSED]),
        "unjustified_expired_sessions": len(unjustified),
        "by_actor": {},
    }
    for event in activations:
        actor = event.actor_identity
        summary["by_actor"][actor] = summary["by_actor"].get(actor, 0) + 1

    details = [
        {
            "session_id": str(s.id),
            "subject_id": str(s.subject_id),
            "activated_by": s.activated_by,
            "activated_at": s.activated_at.isoformat(),
            "expires_at": s.expires_at.isoformat(),
            "status": s.status,
            "justified": bool(s.justification),
        }
        for s in sessions
    ]

    report_data = {"summary": summary, "sessions": details}
    integrity_hash = hashlib.sha256(
        json.dumps(report_data, sort_keys=True, default=str).encode()
    ).hexdigest()

    return ComplianceReport(
        report_id=f"rpt_{uuid.uuid4().hex[:16]}",
        report_type="emergency_access",
        generated_at=now,
        period_start=start_time,
        period_end=end_time,
        summary=summary,
        details=details,
        integrity_hash=integrity_hash,
    )
