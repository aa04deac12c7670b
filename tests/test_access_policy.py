"""Role-based access decisions over patient records."""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from conftest import (
    DOCTOR_ID,
    FACILITY_ID,
    OPERATOR_ID,
    OTHER_DOCTOR_ID,
    OTHER_PATIENT_ID,
    PATIENT_ID,
    SIGNING_KEY,
)
from epatient_access.audit import AuditAction, AuditFilters, AuditTrail
from epatient_access.auth.policy import AccessPolicy, Actor, decide
from epatient_access.auth.session_manager import SessionManager
from epatient_access.auth.tokens import GrantPrincipal, SessionPrincipal, TokenSigner
from epatient_access.errors import Unauthorized
from epatient_access.models import AccessMethod, EmergencyGrant, GrantStatus, Role

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def _grant(doctor_id=DOCTOR_ID, patient_id=PATIENT_ID, **overrides) -> EmergencyGrant:
    values = dict(
        grant_id=uuid4(),
        doctor_id=doctor_id,
        patient_id=patient_id,
        reason="Trauma",
        method=AccessMethod.OTP,
        granted_at=NOW - timedelta(minutes=5),
        expires_at=NOW + timedelta(minutes=25),
    )
    values.update(overrides)
    return EmergencyGrant(**values)


class TestDecide:
    def test_patient_own_record(self):
        actor = Actor(PATIENT_ID, Role.PATIENT)

        assert decide(actor, PATIENT_ID, now=NOW).allowed

    def test_patient_other_record(self):
        actor = Actor(PATIENT_ID, Role.PATIENT)

        assert not decide(actor, OTHER_PATIENT_ID, now=NOW).allowed

    def test_doctor_without_grant(self):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)

        assert not decide(actor, PATIENT_ID, now=NOW).allowed

    def test_doctor_with_active_grant(self):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)

        assert decide(actor, PATIENT_ID, active_grants=[_grant()], now=NOW).allowed

    def test_doctor_grant_for_other_patient(self):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)
        grants = [_grant(patient_id=OTHER_PATIENT_ID)]

        assert not decide(actor, PATIENT_ID, active_grants=grants, now=NOW).allowed

    def test_doctor_grant_held_by_other_doctor(self):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)
        grants = [_grant(doctor_id=OTHER_DOCTOR_ID)]

        assert not decide(actor, PATIENT_ID, active_grants=grants, now=NOW).allowed

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": GrantStatus.REVOKED},
            {"status": GrantStatus.EXPIRED},
            {"expires_at": NOW},
        ],
    )
    def test_doctor_grant_not_active(self, overrides):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)

        decision = decide(actor, PATIENT_ID, active_grants=[_grant(**overrides)], now=NOW)

        assert not decision.allowed

    def test_bound_emergency_actor_other_patient(self):
        actor = Actor(DOCTOR_ID, Role.DOCTOR, bound_patient_id=PATIENT_ID)
        grants = [_grant(patient_id=OTHER_PATIENT_ID)]

        assert not decide(actor, OTHER_PATIENT_ID, active_grants=grants, now=NOW).allowed

    def test_operator_with_encounter(self):
        actor = Actor(OPERATOR_ID, Role.OPERATOR, facility_id=FACILITY_ID)

        assert decide(actor, PATIENT_ID, facility_member=True, now=NOW).allowed

    def test_operator_without_encounter(self):
        actor = Actor(OPERATOR_ID, Role.OPERATOR, facility_id=FACILITY_ID)

        assert not decide(actor, PATIENT_ID, facility_member=False, now=NOW).allowed


@pytest.fixture
def audit(seeded_store, clock) -> AuditTrail:
    return AuditTrail(seeded_store, clock=clock)


@pytest.fixture
def policy(seeded_store, audit, clock) -> AccessPolicy:
    return AccessPolicy(seeded_store, audit, clock=clock)


@pytest.fixture
def sessions(seeded_store, audit, clock) -> SessionManager:
    return SessionManager(
        seeded_store, audit, TokenSigner(SIGNING_KEY, clock=clock), clock=clock
    )


class TestAccessPolicy:
    async def test_operator_actor_carries_facility(self, policy, clock):
        principal = SessionPrincipal(
            OPERATOR_ID, Role.OPERATOR, uuid4(), clock() + timedelta(hours=8)
        )

        actor = await policy.actor_for(principal)

        assert actor.facility_id == FACILITY_ID

    async def test_grant_actor_is_bound(self, policy, clock):
        principal = GrantPrincipal(DOCTOR_ID, PATIENT_ID, uuid4(), clock())

        actor = await policy.actor_for(principal)

        assert actor.role is Role.DOCTOR
        assert actor.bound_patient_id == PATIENT_ID

    async def test_operator_facility_lookup(self, policy):
        actor = Actor(OPERATOR_ID, Role.OPERATOR, facility_id=FACILITY_ID)

        assert await policy.can_access(actor, PATIENT_ID)
        assert not await policy.can_access(actor, OTHER_PATIENT_ID)

    async def test_doctor_access_follows_grant(self, policy, sessions, clock):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)
        assert not await policy.can_access(actor, PATIENT_ID)

        issued = await sessions.grant_emergency_access(DOCTOR_ID, PATIENT_ID, "Trauma", "OTP")
        assert await policy.can_access(actor, PATIENT_ID)

        await sessions.revoke_grant(issued.grant.grant_id)
        assert not await policy.can_access(actor, PATIENT_ID)

    async def test_doctor_access_ends_at_expiry(self, policy, sessions, clock):
        actor = Actor(DOCTOR_ID, Role.DOCTOR)
        await sessions.grant_emergency_access(DOCTOR_ID, PATIENT_ID, "Trauma", "OTP")

        clock.advance(minutes=29)
        assert await policy.can_access(actor, PATIENT_ID)
        clock.advance(minutes=2)
        assert not await policy.can_access(actor, PATIENT_ID)

    async def test_authorize_audits_allowed_read(self, policy, seeded_store):
        actor = Actor(PATIENT_ID, Role.PATIENT)

        await policy.authorize(actor, PATIENT_ID, "lab_results")

        [entry] = await seeded_store.query_audit(AuditFilters(patient_id=PATIENT_ID))
        assert entry.action is AuditAction.PATIENT_DATA_ACCESSED
        assert entry.details["resource"] == "lab_results"

    async def test_authorize_audits_and_raises_on_denial(self, policy, seeded_store):
        actor = Actor(PATIENT_ID, Role.PATIENT)

        with pytest.raises(Unauthorized):
            await policy.authorize(actor, OTHER_PATIENT_ID)

        [entry] = await seeded_store.query_audit(AuditFilters(patient_id=OTHER_PATIENT_ID))
        assert entry.action is AuditAction.PERMISSION_DENIED
        assert entry.actor_id == PATIENT_ID
