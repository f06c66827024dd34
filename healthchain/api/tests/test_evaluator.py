"""
Access Evaluator Tests

Validates the single decision point:
1. Grant, token and break-glass paths in order
2. Exactly one audit entry per evaluation
3. Evaluation never mutates grants, tokens or sessions
"""

from datetime import timedelta

import pytest

from healthchain.api.access.audit import AuditAction
from healthchain.api.access.emergency import EmergencySessionController
from healthchain.api.access.evaluator import AccessEvaluator, Decision, DecisionReason
from healthchain.api.access.grants import AccessGrantRegistry
from healthchain.api.access.levels import AccessLevel
from healthchain.api.access.tokens import EphemeralCredentialIssuer
from healthchain.api.db.models import SESSION_ACTIVE, TOKEN_ACTIVE

GRANTEE = "dr.lee@healthchain.org"


@pytest.fixture
def evaluator(db_session, audit, clock) -> AccessEvaluator:
    return AccessEvaluator(db_session, audit, clock)


@pytest.fixture
def registry(db_session, audit, clock) -> AccessGrantRegistry:
    return AccessGrantRegistry(db_session, audit, clock)


@pytest.fixture
def issuer(db_session, audit, clock) -> EphemeralCredentialIssuer:
    return EphemeralCredentialIssuer(db_session, audit, clock)


@pytest.fixture
def controller(db_session, audit, clock) -> EmergencySessionController:
    async def always(actor, credential):
        return True

    return EmergencySessionController(db_session, reauthenticate=always, audit=audit, clock=clock)


# ==================== Standing Grants ====================


@pytest.mark.asyncio
async def test_no_authorization_denies(evaluator, audit, patient):
    result = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.VIEW_SUMMARY)

    assert result.decision == Decision.DENY
    assert result.reason == DecisionReason.NO_AUTHORIZATION
    assert not result.allowed

    entries, total = await audit.query(subject_id=patient.id)
    assert total == 1
    assert entries[0].action == AuditAction.ACCESS_DENIED.value
    assert entries[0].id == result.audit_entry_id


@pytest.mark.asyncio
async def test_grant_allows_up_to_its_level(evaluator, registry, patient):
    grant = await registry.grant(patient.id, "Dr. Lee", GRANTEE, AccessLevel.VIEW_RECORDS)

    summary = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.VIEW_SUMMARY)
    records = await evaluator.evaluate(patient.id, GRANTEE.upper(), AccessLevel.VIEW_RECORDS)

    assert summary.reason == DecisionReason.STANDING_GRANT
    assert records.allowed
    assert records.context_ref == str(grant.id)


@pytest.mark.asyncio
async def test_view_records_grant_does_not_cover_override(evaluator, registry, patient):
    await registry.grant(patient.id, "Dr. Lee", GRANTEE, AccessLevel.VIEW_RECORDS)

    result = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.EMERGENCY_OVERRIDE)

    assert result.decision == Decision.DENY
    assert "below" in result.detail


@pytest.mark.asyncio
async def test_grant_is_per_subject(evaluator, registry, patient, other_patient):
    await registry.grant(patient.id, "Dr. Lee", GRANTEE, AccessLevel.FULL_ACCESS)

    result = await evaluator.evaluate(other_patient.id, GRANTEE, AccessLevel.VIEW_SUMMARY)

    assert result.decision == Decision.DENY


@pytest.mark.asyncio
async def test_revoked_grant_denies(evaluator, registry, patient):
    grant = await registry.grant(patient.id, "Dr. Lee", GRANTEE, AccessLevel.VIEW_RECORDS)
    await registry.revoke(patient.id, grant.id)

    result = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.VIEW_SUMMARY)

    assert result.decision == Decision.DENY


# ==================== Consent Tokens ====================


@pytest.mark.asyncio
async def test_token_allows_walk_up_actor(evaluator, issuer, patient):
    issued = await issuer.issue(patient.id)

    result = await evaluator.evaluate(
        patient.id, "walk-in@er.org", AccessLevel.VIEW_RECORDS, code=issued.display_code
    )

    assert result.reason == DecisionReason.EPHEMERAL_TOKEN
    assert result.context_ref == str(issued.token.id)


@pytest.mark.asyncio
async def test_token_level_is_enforced(evaluator, issuer, patient):
    issued = await issuer.issue(patient.id, level=AccessLevel.VIEW_SUMMARY)

    result = await evaluator.evaluate(
        patient.id, "walk-in@er.org", AccessLevel.VIEW_RECORDS, code=issued.code
    )

    assert result.decision == Decision.DENY


@pytest.mark.asyncio
async def test_token_of_other_subject_denies(evaluator, issuer, patient, other_patient):
    issued = await issuer.issue(other_patient.id)

    result = await evaluator.evaluate(
        patient.id, "walk-in@er.org", AccessLevel.VIEW_SUMMARY, code=issued.code
    )

    assert result.decision == Decision.DENY
    assert "another subject" in result.detail


@pytest.mark.asyncio
async def test_expired_token_denies_without_mutation(evaluator, issuer, clock, patient):
    issued = await issuer.issue(patient.id, timedelta(minutes=1))
    clock.advance(timedelta(minutes=2))

    result = await evaluator.evaluate(
        patient.id, "walk-in@er.org", AccessLevel.VIEW_SUMMARY, code=issued.code
    )

    assert result.decision == Decision.DENY
    assert "expired" in result.detail
    assert (await issuer.resolve(issued.code)).status == TOKEN_ACTIVE


@pytest.mark.asyncio
async def test_superseded_token_denies(evaluator, issuer, patient):
    first = await issuer.issue(patient.id)
    await issuer.issue(patient.id)

    result = await evaluator.evaluate(
        patient.id, "walk-in@er.org", AccessLevel.VIEW_SUMMARY, code=first.code
    )

    assert result.decision == Decision.DENY
    assert "revoked" in result.detail


# ==================== Break-Glass ====================


@pytest.mark.asyncio
async def test_emergency_session_allows_anyone_up_to_override(evaluator, controller, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, "pw")

    override = await evaluator.evaluate(patient.id, "nurse@er.org", AccessLevel.EMERGENCY_OVERRIDE)
    full = await evaluator.evaluate(patient.id, "nurse@er.org", AccessLevel.FULL_ACCESS)

    assert override.reason == DecisionReason.EMERGENCY_OVERRIDE
    assert override.context_ref == str(session.id)
    assert full.decision == Decision.DENY


@pytest.mark.asyncio
async def test_expired_emergency_session_denies(evaluator, controller, clock, patient, doctor):
    session = await controller.activate(patient.id, doctor.email, "pw")
    clock.advance(timedelta(minutes=5))

    result = await evaluator.evaluate(patient.id, doctor.email, AccessLevel.VIEW_SUMMARY)

    assert result.decision == Decision.DENY
    assert (await controller.get(session.id)).status == SESSION_ACTIVE


@pytest.mark.asyncio
async def test_grant_takes_precedence_over_emergency(evaluator, registry, controller, patient, doctor):
    await registry.grant(patient.id, "Dr. Lee", doctor.email, AccessLevel.VIEW_RECORDS)
    await controller.activate(patient.id, doctor.email, "pw")

    result = await evaluator.evaluate(patient.id, doctor.email, AccessLevel.VIEW_RECORDS)

    assert result.reason == DecisionReason.STANDING_GRANT


# ==================== Audit & Determinism ====================


@pytest.mark.asyncio
async def test_one_audit_entry_per_evaluation(evaluator, registry, audit, patient):
    await registry.grant(patient.id, "Dr. Lee", GRANTEE, AccessLevel.VIEW_SUMMARY)
    before = await audit.count(patient.id)

    levels = [AccessLevel.VIEW_SUMMARY, AccessLevel.VIEW_RECORDS, AccessLevel.FULL_ACCESS]
    for level in levels:
        await evaluator.evaluate(patient.id, GRANTEE, level)

    entries, total = await audit.query(subject_id=patient.id)
    assert total == before + len(levels)
    assert [e.action for e in entries[before:]] == [
        AuditAction.ACCESS_ALLOWED.value,
        AuditAction.ACCESS_DENIED.value,
        AuditAction.ACCESS_DENIED.value,
    ]


@pytest.mark.asyncio
async def test_same_state_same_decision(evaluator, issuer, patient):
    issued = await issuer.issue(patient.id)

    first = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.VIEW_RECORDS, code=issued.code)
    second = await evaluator.evaluate(patient.id, GRANTEE, AccessLevel.VIEW_RECORDS, code=issued.code)

    assert (first.decision, first.reason, first.context_ref) == (
        second.decision, second.reason, second.context_ref
    )
    assert first.audit_entry_id != second.audit_entry_id
