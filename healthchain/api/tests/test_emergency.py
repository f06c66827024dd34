"""
Break-Glass Tests

Validates the emergency session lifecycle:
1. Re-authentication gate, audited on failure
2. At most one unclosed session per subject
3. Closing requires a justification and happens once
4. Expiry ends access without closing the session
"""

import uuid
from datetime import timedelta

import pytest

from healthchain.api.access.audit import AuditAction, AuditFilter
from healthchain.api.access.emergency import EmergencySessionController
from healthchain.api.access.errors import (
    AlreadyActive,
    AlreadyClosed,
    JustificationRequired,
    NotFound,
    Unauthorized,
)
from healthchain.api.auth.service import AuthService
from healthchain.api.db.models import SESSION_ACTIVE, SESSION_CLOSED

from healthchain.api.tests.conftest import PASSWORD


@pytest.fixture
def controller(db_session, audit, clock) -> EmergencySessionController:
    return EmergencySessionController(
        db_session,
        reauthenticate=AuthService(db_session).reauthenticate,
        audit=audit,
        clock=clock,
    )


# ==================== Activation ====================


@pytest.mark.asyncio
async def test_activate_opens_session(controller, audit, clock, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)

    assert session.status == SESSION_ACTIVE
    assert session.activated_by == doctor.email
    assert session.activated_at == clock.now()
    assert session.expires_at == clock.now() + timedelta(minutes=5)
    assert await controller.is_active(patient.id)

    entries, _ = await audit.query(subject_id=patient.id)
    assert entries[-1].action == AuditAction.EMERGENCY_ACTIVATED.value
    assert entries[-1].context_ref == str(session.id)


@pytest.mark.asyncio
async def test_activate_wrong_password_is_audited(controller, audit, patient, doctor):
    with pytest.raises(Unauthorized):
        await controller.activate(patient.id, doctor.email, "wrong-password")

    assert not await controller.is_active(patient.id)
    entries, total = await audit.query(subject_id=patient.id)
    assert total == 1
    assert entries[0].action == AuditAction.ACCESS_DENIED.value
    assert entries[0].actor_identity == doctor.email


@pytest.mark.asyncio
async def test_activate_without_verifier_fails_closed(db_session, audit, clock, patient, doctor):
    controller = EmergencySessionController(db_session, audit=audit, clock=clock)

    with pytest.raises(Unauthorized):
        await controller.activate(patient.id, doctor.email, PASSWORD)


@pytest.mark.asyncio
async def test_activate_with_custom_verifier(db_session, audit, clock, patient):
    async def hardware_key(actor, credential):
        return credential == "tap"

    controller = EmergencySessionController(
        db_session, reauthenticate=hardware_key, audit=audit, clock=clock
    )

    session = await controller.activate(patient.id, "er-terminal-7", "tap")
    assert session.activated_by == "er-terminal-7"


@pytest.mark.asyncio
async def test_activate_unknown_subject(controller, doctor):
    with pytest.raises(NotFound):
        await controller.activate(uuid.uuid4(), doctor.email, PASSWORD)


@pytest.mark.asyncio
async def test_second_activation_rejected(controller, audit, patient, doctor):
    await controller.activate(patient.id, doctor.email, PASSWORD)
    before = await audit.count(patient.id)

    with pytest.raises(AlreadyActive):
        await controller.activate(patient.id, doctor.email, PASSWORD)

    sessions = await controller.list_sessions(subject_id=patient.id)
    assert len(sessions) == 1
    assert await audit.count(patient.id) == before


@pytest.mark.asyncio
async def test_expired_session_still_blocks_activation(controller, clock, patient, doctor):
    await controller.activate(patient.id, doctor.email, PASSWORD)
    clock.advance(timedelta(minutes=6))

    with pytest.raises(AlreadyActive):
        await controller.activate(patient.id, doctor.email, PASSWORD)


# ==================== Expiry ====================


@pytest.mark.asyncio
async def test_expiry_ends_access_but_not_session(controller, clock, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)

    clock.advance(timedelta(minutes=5) - timedelta(seconds=1))
    assert await controller.is_active(patient.id)

    clock.advance(timedelta(seconds=1))
    assert not await controller.is_active(patient.id)

    stored = await controller.get(session.id)
    assert stored.status == SESSION_ACTIVE
    assert stored.justification is None
    assert [s.id for s in await controller.overdue_justifications()] == [session.id]


# ==================== Closure ====================


@pytest.mark.asyncio
async def test_close_with_justification(controller, audit, clock, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)
    clock.advance(timedelta(minutes=3))

    closed = await controller.close(
        session.id, "  Unconscious patient, allergy check  ", closed_by=doctor.email
    )

    assert closed.status == SESSION_CLOSED
    assert closed.justification == "Unconscious patient, allergy check"
    assert closed.closed_at == clock.now()
    assert not await controller.is_active(patient.id)

    entries, _ = await audit.query(
        subject_id=patient.id,
        filters=AuditFilter(actions=[AuditAction.EMERGENCY_CLOSED]),
    )
    assert entries[0].details == "Unconscious patient, allergy check"


@pytest.mark.asyncio
@pytest.mark.parametrize("justification", ["", "   ", "\n\t"])
async def test_close_requires_justification(controller, patient, doctor, justification):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)

    with pytest.raises(JustificationRequired):
        await controller.close(session.id, justification)

    assert (await controller.get(session.id)).status == SESSION_ACTIVE


@pytest.mark.asyncio
async def test_close_twice(controller, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)
    await controller.close(session.id, "Cardiac arrest")

    with pytest.raises(AlreadyClosed):
        await controller.close(session.id, "Second note")

    assert (await controller.get(session.id)).justification == "Cardiac arrest"


@pytest.mark.asyncio
async def test_close_by_someone_else(controller, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)

    with pytest.raises(NotFound):
        await controller.close(session.id, "Not mine", closed_by="other@healthchain.org")


@pytest.mark.asyncio
async def test_takeover_refused_while_live(controller, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)

    with pytest.raises(NotFound):
        await controller.close(
            session.id, "Not mine", closed_by="other@healthchain.org", takeover=True
        )


@pytest.mark.asyncio
async def test_takeover_closes_abandoned_session(controller, audit, clock, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, PASSWORD)
    clock.advance(timedelta(hours=6))

    closed = await controller.close(
        session.id,
        "Handover: chart review after cardiac arrest",
        closed_by="admin@healthchain.org",
        takeover=True,
    )

    assert closed.status == SESSION_CLOSED
    entries, _ = await audit.query(
        subject_id=patient.id,
        filters=AuditFilter(actions=[AuditAction.EMERGENCY_CLOSED]),
    )
    assert entries[0].actor_identity == "admin@healthchain.org"
    assert doctor.email in entries[0].details
    assert await controller.overdue_justifications() == []


@pytest.mark.asyncio
async def test_close_unknown_session(controller):
    with pytest.raises(NotFound):
        await controller.close(uuid.uuid4(), "Anything")


@pytest.mark.asyncio
async def test_close_after_expiry_then_reactivate(controller, clock, patient, doctor):
    first = await controller.activate(patient.id, doctor.email, PASSWORD)
    clock.advance(timedelta(minutes=30))
    await controller.close(first.id, "Trauma bay, patient unresponsive")

    second = await controller.activate(patient.id, doctor.email, PASSWORD)

    assert second.id != first.id
    assert await controller.overdue_justifications() == []
