"""
HealthChain - Access & Consent Module

Consent-gated access control with time-limited emergency override.

Components:
- clock.py: Server-side time source for every expiry decision
- levels.py: Access levels (total order), roles, break-glass eligibility
- errors.py: Error taxonomy and HTTP mapping
- audit.py: Append-only audit log, exports, compliance reports
- grants.py: Standing grants (AccessGrantRegistry)
- tokens.py: QR / one-time consent codes (EphemeralCredentialIssuer)
- emergency.py: Break-glass sessions (EmergencySessionController)
- evaluator.py: The single allow/deny decision point (AccessEvaluator)
- routes.py, schemas.py: HTTP surface

Usage:
    from healthchain.api.access.evaluator import AccessEvaluator
    from healthchain.api.access.levels import AccessLevel

    decision = await AccessEvaluator(db).evaluate(
        subject_id, "dr.ada@clinic.org", AccessLevel.VIEW_RECORDS
    )

Submodules are imported directly; this package does not re-export them
because the ORM models depend on ``levels``.
"""
