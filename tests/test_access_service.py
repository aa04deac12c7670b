"""End-to-end flows through AccessService on the in-memory store."""

import csv
import io
from unittest.mock import AsyncMock

import pytest

from conftest import (
    DOCTOR_ID,
    DOCTOR_MOBILE,
    OPERATOR_MOBILE,
    OTHER_DOCTOR_ID,
    OTHER_DOCTOR_MOBILE,
    OTHER_PATIENT_ID,
    OTHER_PATIENT_MOBILE,
    PATIENT_FINGERPRINT,
    PATIENT_ID,
    PATIENT_MOBILE,
    SIGNING_KEY,
)
from epatient_access.audit import AuditAction, AuditFilters
from epatient_access.auth.tokens import GrantPrincipal
from epatient_access.config import AccessConfig
from epatient_access.errors import (
    AlreadyConsumed,
    Conflict,
    ErrorKind,
    Expired,
    Mismatch,
    MissingJustification,
    NoMatch,
    NotFound,
    StorageFailure,
    Unauthorized,
    ValidationError,
)
from epatient_access.models import BiometricType, ChallengePurpose, GrantStatus, Role
from epatient_access.service import AccessService, Registration


def _wrong(code: str) -> str:
    return "".join("1" if c != "1" else "2" for c in code)


async def _audit(service, **filters):
    return await service.query_audit(AuditFilters(**filters))


async def _emergency_by_code(service, notifier, patient_identifier=PATIENT_MOBILE, **kwargs):
    await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
    code = notifier.last_code(DOCTOR_MOBILE)
    return await service.request_emergency_access(
        DOCTOR_MOBILE,
        patient_identifier,
        kwargs.pop("reason", "cardiac emergency"),
        "OTP",
        code,
        **kwargs,
    )


class TestRequestChallenge:
    async def test_known_identity_gets_code(self, service, notifier):
        receipt = await service.request_challenge(PATIENT_MOBILE, "LOGIN")

        assert receipt.purpose is ChallengePurpose.LOGIN
        assert receipt.code is None
        assert notifier.sent[-1][0] == PATIENT_MOBILE

    async def test_unknown_identity_same_response_no_delivery(self, service, notifier):
        receipt = await service.request_challenge("+15559990000", "LOGIN")

        assert receipt.code is None
        assert notifier.sent == []

    async def test_registration_code_delivered_to_new_number(self, service, notifier):
        await service.request_challenge("+15559990000", ChallengePurpose.REGISTRATION)

        assert notifier.last_code("+15559990000")

    async def test_emergency_code_only_for_doctors(self, service, notifier):
        await service.request_challenge(PATIENT_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
        assert notifier.sent == []

        await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
        assert notifier.last_code(DOCTOR_MOBILE)

    async def test_issuance_audited_without_code(self, service, notifier):
        await service.request_challenge(PATIENT_MOBILE, "LOGIN")

        [entry] = await _audit(service, action=AuditAction.OTP_GENERATED)
        assert entry.actor_id == PATIENT_ID
        assert entry.details["identifier"] != PATIENT_MOBILE
        assert "code" not in entry.details
        assert entry.details["delivered"] is True

    async def test_unknown_purpose(self, service):
        with pytest.raises(ValidationError):
            await service.request_challenge(PATIENT_MOBILE, "PASSWORD_RESET")

    async def test_expose_codes(self, seeded_store, matcher, clock, fast_hasher):
        service = AccessService(
            seeded_store,
            signing_key=SIGNING_KEY,
            matcher=matcher,
            config=AccessConfig(expose_codes=True),
            clock=clock,
            code_hasher=fast_hasher,
        )

        receipt = await service.request_challenge(PATIENT_MOBILE, "LOGIN")

        assert receipt.code is not None
        assert receipt.code not in repr(receipt)


class TestLogin:
    async def test_wrong_then_right_then_reuse(self, service, notifier, seeded_store):
        await service.request_challenge(PATIENT_MOBILE, "LOGIN")
        code = notifier.last_code(PATIENT_MOBILE)

        with pytest.raises(Mismatch):
            await service.verify_challenge(PATIENT_MOBILE, _wrong(code))

        result = await service.verify_challenge(PATIENT_MOBILE, code)
        assert result.identity_id == PATIENT_ID
        assert result.role is Role.PATIENT
        assert (await service.validate_session(result.token)).valid

        with pytest.raises(AlreadyConsumed):
            await service.verify_challenge(PATIENT_MOBILE, code)

        failed = await _audit(service, action=AuditAction.LOGIN_FAILED)
        assert [e.details["error"] for e in failed] == ["already_consumed", "mismatch"]
        assert len(await _audit(service, action=AuditAction.LOGIN)) == 1

    async def test_superseded_code_rejected(self, service, notifier):
        await service.request_challenge(PATIENT_MOBILE, "LOGIN")
        old = notifier.last_code(PATIENT_MOBILE)
        await service.request_challenge(PATIENT_MOBILE, "LOGIN")
        new = notifier.last_code(PATIENT_MOBILE)
        if old == new:
            pytest.skip("codes collided")

        with pytest.raises(Expired):
            await service.verify_challenge(PATIENT_MOBILE, old)

        assert (await service.verify_challenge(PATIENT_MOBILE, new)).identity_id == PATIENT_ID

    async def test_operator_login_audited_as_operator(self, service, login):
        result = await login(OPERATOR_MOBILE)

        assert result.role is Role.OPERATOR
        assert len(await _audit(service, action=AuditAction.OPERATOR_LOGIN)) == 1

    async def test_only_login_codes(self, service):
        with pytest.raises(ValidationError):
            await service.verify_challenge(PATIENT_MOBILE, "123456", "EMERGENCY_ACCESS")

    async def test_biometric_login(self, service):
        result = await service.verify_biometric(PATIENT_MOBILE, "fingerprint", PATIENT_FINGERPRINT)

        assert result.identity_id == PATIENT_ID
        [entry] = await _audit(service, action=AuditAction.LOGIN)
        assert entry.details["method"] == "FINGERPRINT"

    async def test_biometric_login_failure_audited(self, service):
        with pytest.raises(NoMatch):
            await service.verify_biometric(PATIENT_MOBILE, BiometricType.FINGERPRINT, b"wrong")

        [entry] = await _audit(service, action=AuditAction.BIOMETRIC_VERIFICATION_FAILED)
        assert entry.details["error"] == "no_match"

    async def test_unknown_identifier_biometric_looks_like_mismatch(self, service):
        with pytest.raises(NoMatch):
            await service.verify_biometric("+15559990000", "FINGERPRINT", PATIENT_FINGERPRINT)


class TestRegistration:
    async def test_register_then_login(self, service, notifier, login):
        await service.request_challenge("+15550004444", ChallengePurpose.REGISTRATION)

        identity = await service.register_identity(
            notifier.last_code("+15550004444"),
            Registration(name="Dana Ruiz", mobile="+15550004444", email="dana@example.org"),
        )

        assert identity.role is Role.PATIENT
        [entry] = await _audit(service, action=AuditAction.PATIENT_REGISTRATION)
        assert entry.patient_id == identity.identity_id
        assert (await login("+15550004444")).identity_id == identity.identity_id

    async def test_duplicate_mobile(self, service, notifier):
        await service.request_challenge(PATIENT_MOBILE, ChallengePurpose.REGISTRATION)

        with pytest.raises(Conflict):
            await service.register_identity(
                notifier.last_code(PATIENT_MOBILE),
                Registration(name="Again", mobile=PATIENT_MOBILE),
            )

        [entry] = await _audit(service, action=AuditAction.REGISTRATION_FAILED)
        assert entry.details["error"] == "conflict"
        assert len(await _audit(service, action=AuditAction.PATIENT_REGISTRATION)) == 0

    async def test_missing_name(self, service):
        with pytest.raises(ValidationError):
            await service.register_identity("123456", Registration(name="", mobile="+1555"))


class TestEnrollBiometric:
    async def test_patient_enrolls_and_logs_in(self, service, login):
        session = await login(OTHER_PATIENT_MOBILE)

        await service.enroll_biometric(session.token, BiometricType.IRIS, b"ben-iris")

        result = await service.verify_biometric(OTHER_PATIENT_MOBILE, "IRIS", b"ben-iris")
        assert result.identity_id == OTHER_PATIENT_ID
        assert len(await _audit(service, action=AuditAction.BIOMETRIC_REGISTRATION)) == 1

    async def test_doctor_cannot_enroll(self, service, login):
        session = await login(DOCTOR_MOBILE)

        with pytest.raises(Unauthorized):
            await service.enroll_biometric(session.token, BiometricType.IRIS, b"iris")


class TestEmergencyByCode:
    async def test_grant_opens_access_to_that_patient_only(self, service, notifier):
        issued = await _emergency_by_code(service, notifier, facility="City General ER")

        assert issued.grant.status is GrantStatus.ACTIVE
        principal = await service.access_patient_record(issued.token, PATIENT_ID)
        assert isinstance(principal, GrantPrincipal)
        with pytest.raises(Unauthorized):
            await service.access_patient_record(issued.token, OTHER_PATIENT_ID)

        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS)
        assert entry.actor_id == DOCTOR_ID
        assert entry.patient_id == PATIENT_ID
        assert entry.details["patient_identification"] == "manual_identifier"
        assert entry.details["facility"] == "City General ER"

    async def test_revoke_closes_access(self, service, notifier):
        issued = await _emergency_by_code(service, notifier)

        assert await service.revoke_session(issued.token) is True
        assert await service.revoke_session(issued.token) is False

        with pytest.raises(Unauthorized):
            await service.access_patient_record(issued.token, PATIENT_ID)
        assert len(await _audit(service, action=AuditAction.EMERGENCY_SESSION_REVOKED)) == 1

    async def test_access_at_29_and_31_minutes(self, service, notifier, clock):
        issued = await _emergency_by_code(service, notifier)

        clock.advance(minutes=29)
        await service.access_patient_record(issued.token, PATIENT_ID)

        clock.advance(minutes=2)
        with pytest.raises(Unauthorized):
            await service.access_patient_record(issued.token, PATIENT_ID)
        grant = await service.sessions.get_grant(issued.grant.grant_id)
        assert grant.status is GrantStatus.EXPIRED

    async def test_code_requires_patient_identifier(self, service, notifier):
        with pytest.raises(ValidationError):
            await _emergency_by_code(service, notifier, patient_identifier=None)

        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS_DENIED)
        assert entry.details["error"] == "validation_error"

    async def test_missing_reason_leaves_code_usable(self, service, notifier):
        await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
        code = notifier.last_code(DOCTOR_MOBILE)

        with pytest.raises(MissingJustification):
            await service.request_emergency_access(
                DOCTOR_MOBILE, PATIENT_MOBILE, "  ", "OTP", code
            )

        issued = await service.request_emergency_access(
            DOCTOR_MOBILE, PATIENT_MOBILE, "Trauma", "OTP", code
        )
        assert issued.grant.patient_id == PATIENT_ID

    async def test_unknown_patient(self, service, notifier):
        with pytest.raises(NotFound):
            await _emergency_by_code(service, notifier, patient_identifier="+15559990000")

    async def test_wrong_code_denied_and_audited(self, service, notifier):
        await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
        code = notifier.last_code(DOCTOR_MOBILE)

        with pytest.raises(Mismatch):
            await service.request_emergency_access(
                DOCTOR_MOBILE, PATIENT_MOBILE, "Trauma", "OTP", _wrong(code)
            )

        assert await service.sessions.list_active_grants_for_doctor(DOCTOR_ID) == []
        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS_DENIED)
        assert entry.details["error"] == "mismatch"

    async def test_malformed_code_bytes_denied_and_audited(self, service, notifier):
        await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)

        with pytest.raises(ValidationError):
            await service.request_emergency_access(
                DOCTOR_MOBILE, PATIENT_MOBILE, "cardiac arrest", "OTP", b"\xff\xfe12"
            )

        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS_DENIED)
        assert entry.details["error"] == "validation_error"
        assert await service.sessions.list_active_grants_for_doctor(DOCTOR_ID) == []

    async def test_audit_failure_leaves_no_grant(self, service, notifier, seeded_store):
        await service.request_challenge(DOCTOR_MOBILE, ChallengePurpose.EMERGENCY_ACCESS)
        code = notifier.last_code(DOCTOR_MOBILE)
        seeded_store.append_audit = AsyncMock(side_effect=StorageFailure("audit down"))

        with pytest.raises(StorageFailure) as exc_info:
            await service.request_emergency_access(
                DOCTOR_MOBILE, PATIENT_MOBILE, "Trauma", "OTP", code
            )

        assert exc_info.value.kind is ErrorKind.STORAGE_FAILURE
        assert await seeded_store.list_grants_for_patient(PATIENT_ID) == []


class TestEmergencyByBiometric:
    async def test_scan_identifies_patient(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        issued = await service.request_emergency_access(
            DOCTOR_MOBILE,
            None,
            "Unconscious, no ID",
            "FINGERPRINT",
            PATIENT_FINGERPRINT,
            doctor_token=doctor.token,
        )

        assert issued.grant.patient_id == PATIENT_ID
        assert issued.grant.doctor_id == DOCTOR_ID
        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS)
        assert entry.details["patient_identification"] == "biometric_scan"

    async def test_requires_doctor_session(self, service):
        with pytest.raises(Unauthorized):
            await service.request_emergency_access(
                DOCTOR_MOBILE, None, "Trauma", "FINGERPRINT", PATIENT_FINGERPRINT
            )

    async def test_session_must_match_doctor_mobile(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        with pytest.raises(Unauthorized):
            await service.request_emergency_access(
                OTHER_DOCTOR_MOBILE,
                None,
                "Trauma",
                "FINGERPRINT",
                PATIENT_FINGERPRINT,
                doctor_token=doctor.token,
            )

    async def test_patient_session_cannot_break_glass(self, service, login):
        patient = await login(OTHER_PATIENT_MOBILE)

        with pytest.raises(Unauthorized):
            await service.request_emergency_access(
                OTHER_PATIENT_MOBILE,
                None,
                "Trauma",
                "FINGERPRINT",
                PATIENT_FINGERPRINT,
                doctor_token=patient.token,
            )

    async def test_unmatched_sample(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        with pytest.raises(NoMatch):
            await service.request_emergency_access(
                DOCTOR_MOBILE, None, "Trauma", "FINGERPRINT", b"stranger", doctor_token=doctor.token
            )

    async def test_doctor_mobile_required(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        with pytest.raises(ValidationError):
            await service.request_emergency_access(
                "", None, "Trauma", "FINGERPRINT", PATIENT_FINGERPRINT, doctor_token=doctor.token
            )

        [entry] = await _audit(service, action=AuditAction.EMERGENCY_ACCESS_DENIED)
        assert entry.details["error"] == "validation_error"
        assert await service.sessions.list_active_grants_for_doctor(DOCTOR_ID) == []

    async def test_unencodable_sample_text(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        with pytest.raises(ValidationError):
            await service.request_emergency_access(
                DOCTOR_MOBILE, None, "Trauma", "FINGERPRINT", "\udcff", doctor_token=doctor.token
            )

        assert len(await _audit(service, action=AuditAction.EMERGENCY_ACCESS_DENIED)) == 1


class TestSessionsAndGrants:
    async def test_logout_ends_session(self, service, login):
        session = await login(PATIENT_MOBILE)

        assert await service.revoke_session(session.token) is True
        assert await service.revoke_session(session.token) is False
        assert not (await service.validate_session(session.token)).valid
        assert len(await _audit(service, action=AuditAction.LOGOUT)) == 1

    async def test_patient_record_access(self, service, login):
        session = await login(PATIENT_MOBILE)

        await service.access_patient_record(session.token, PATIENT_ID)
        with pytest.raises(Unauthorized):
            await service.access_patient_record(session.token, OTHER_PATIENT_ID)

    async def test_operator_record_access_by_facility(self, service, login):
        session = await login(OPERATOR_MOBILE)

        await service.access_patient_record(session.token, PATIENT_ID)
        with pytest.raises(Unauthorized):
            await service.access_patient_record(session.token, OTHER_PATIENT_ID)

    async def test_invalid_token_denied_and_audited(self, service):
        with pytest.raises(Unauthorized):
            await service.access_patient_record("garbage", PATIENT_ID)

        [entry] = await _audit(service, action=AuditAction.PERMISSION_DENIED)
        assert entry.patient_id == PATIENT_ID
        assert entry.details["error"] == "unauthorized"

    async def test_patient_revokes_grant(self, service, notifier, login):
        issued = await _emergency_by_code(service, notifier)
        patient = await login(PATIENT_MOBILE)

        grant = await service.revoke_grant(patient.token, issued.grant.grant_id)

        assert grant.status is GrantStatus.REVOKED

    async def test_unrelated_doctor_cannot_revoke(self, service, notifier, login):
        issued = await _emergency_by_code(service, notifier)
        other = await login(OTHER_DOCTOR_MOBILE)

        with pytest.raises(Unauthorized):
            await service.revoke_grant(other.token, issued.grant.grant_id)

    async def test_doctor_lists_active_grants(self, service, notifier, login):
        await _emergency_by_code(service, notifier)
        doctor = await login(DOCTOR_MOBILE)

        grants = await service.list_active_grants(doctor.token)

        assert [g.patient_id for g in grants] == [PATIENT_ID]

    async def test_patient_cannot_list_grants(self, service, login):
        patient = await login(PATIENT_MOBILE)

        with pytest.raises(Unauthorized):
            await service.list_active_grants(patient.token)

    async def test_patient_sees_emergency_history(self, service, notifier, login, clock):
        await _emergency_by_code(service, notifier)
        clock.advance(minutes=45)
        patient = await login(PATIENT_MOBILE)

        history = await service.emergency_history(patient.token)

        assert len(history) == 1
        assert history[0].status is GrantStatus.EXPIRED

    async def test_doctor_cannot_read_patient_history(self, service, login):
        doctor = await login(DOCTOR_MOBILE)

        with pytest.raises(Unauthorized):
            await service.emergency_history(doctor.token)

    @pytest.mark.parametrize("limit", [0, -1])
    async def test_history_limit_must_be_positive(self, service, login, limit):
        patient = await login(PATIENT_MOBILE)

        with pytest.raises(ValidationError):
            await service.emergency_history(patient.token, limit=limit)


class TestAuditQueries:
    async def test_patient_query_ordering_and_isolation(self, service, clock):
        await service.sessions.grant_emergency_access(DOCTOR_ID, PATIENT_ID, "First", "OTP")
        clock.advance(minutes=1)
        await service.sessions.grant_emergency_access(DOCTOR_ID, OTHER_PATIENT_ID, "Other", "OTP")
        clock.advance(minutes=1)
        await service.sessions.grant_emergency_access(OTHER_DOCTOR_ID, PATIENT_ID, "Second", "OTP")

        entries = await service.query_audit(
            AuditFilters(patient_id=PATIENT_ID, action=AuditAction.EMERGENCY_ACCESS)
        )

        assert [e.details["reason"] for e in entries] == ["Second", "First"]
        assert all(e.patient_id == PATIENT_ID for e in entries)

    async def test_default_limit_applied(self, seeded_store, matcher, clock, fast_hasher):
        config = AccessConfig()
        config.audit.default_query_limit = 2
        service = AccessService(
            seeded_store, SIGNING_KEY, matcher, config=config, clock=clock, code_hasher=fast_hasher
        )
        for _ in range(3):
            await service.audit.append(AuditAction.LOGIN)

        filters = AuditFilters()
        assert len(await service.query_audit(filters)) == 2
        assert filters.limit is None

    async def test_export_csv(self, service, notifier):
        await _emergency_by_code(service, notifier)

        data = await service.export_audit_csv(PATIENT_ID)

        rows = list(csv.DictReader(io.StringIO(data.decode("utf-8"))))
        assert {r["patient_id"] for r in rows} == {PATIENT_ID}
        assert "EMERGENCY_ACCESS" in {r["action"] for r in rows}

    async def test_chain_intact_after_full_flow(self, service, notifier, login):
        session = await login(PATIENT_MOBILE)
        issued = await _emergency_by_code(service, notifier)
        await service.access_patient_record(issued.token, PATIENT_ID)
        await service.revoke_session(issued.token)
        await service.revoke_session(session.token)

        report = await service.verify_audit_integrity()
        stats = await service.audit_stats()

        assert report.is_valid
        assert report.total_entries == stats.total
        assert stats.emergency_grants == 1

    @pytest.mark.parametrize(
        "filters", [AuditFilters(limit=0), AuditFilters(limit=-5), AuditFilters(offset=-1)]
    )
    async def test_invalid_paging_rejected(self, service, filters):
        with pytest.raises(ValidationError):
            await service.query_audit(filters)
