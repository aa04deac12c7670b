"""Inbound boundary of the access-control core.

``AccessService`` wires the verifier, challenge store, session manager, access
policy, audit trail and sweeper around one ``AccessStore``. Every call that
makes a security-relevant decision writes exactly one audit entry, whether it
succeeds or fails.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from argon2 import PasswordHasher

from .audit.integrity import IntegrityReport
from .audit.models import AuditAction, AuditEntry, AuditFilters, AuditStats
from .audit.trail import AuditTrail
from .auth.biometrics import BiometricMatcher
from .auth.challenges import ChallengeStore
from .auth.policy import AccessPolicy
from .auth.session_manager import (
    IssuedGrant,
    SessionManager,
    TokenStatus,
    parse_access_method,
)
from .auth.tokens import Principal, SessionPrincipal, TokenSigner
from .auth.verifier import AuthMethod, CredentialVerifier, ProofSubject, default_methods
from .config import AccessConfig
from .errors import (
    AccessError,
    Expired,
    MissingJustification,
    NotFound,
    StorageFailure,
    Unauthorized,
    ValidationError,
)
from .models import (
    AccessMethod,
    BiometricType,
    ChallengePurpose,
    EmergencyGrant,
    Identity,
    Role,
)
from .secrets import MaskedSecret
from .storage.base import AccessStore
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


class ChallengeNotifier(ABC):
    """Delivers one-time codes to their owner, e.g. by SMS."""

    @abstractmethod
    async def deliver(self, identifier: str, purpose: ChallengePurpose, code: str) -> None: ...


@dataclass(frozen=True)
class ChallengeReceipt:
    purpose: ChallengePurpose
    expires_at: datetime
    code: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class LoginResult:
    identity_id: str
    role: Role
    expires_at: datetime
    token: str = field(repr=False)


@dataclass(frozen=True)
class Registration:
    name: str
    mobile: str
    email: str | None = None
    emergency_contact: str | None = None


def _parse_purpose(purpose: ChallengePurpose | str) -> ChallengePurpose:
    if isinstance(purpose, ChallengePurpose):
        return purpose
    try:
        return ChallengePurpose(purpose.strip().upper())
    except ValueError as e:
        raise ValidationError(f"Unknown challenge purpose: {purpose}") from e


def _patient_scope(identity_id: str, role: Role) -> str | None:
    return identity_id if role is Role.PATIENT else None


class AccessService:
    def __init__(
        self,
        store: AccessStore,
        signing_key: MaskedSecret | str,
        matcher: BiometricMatcher,
        config: AccessConfig | None = None,
        notifier: ChallengeNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
        code_hasher: PasswordHasher | None = None,
        methods: dict[AccessMethod, AuthMethod] | None = None,
    ):
        self.config = config or AccessConfig()
        self._store = store
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(UTC))

        self.audit = AuditTrail(
            store, clock=self._clock, csv_delimiter=self.config.audit.csv_delimiter
        )
        self.challenges = ChallengeStore(
            store, self.config.challenge, clock=self._clock, hasher=code_hasher
        )
        self.verifier = CredentialVerifier(
            store, self.challenges, matcher, self.config.biometric.match_threshold
        )
        self.sessions = SessionManager(
            store,
            self.audit,
            TokenSigner(signing_key, issuer=self.config.session.issuer, clock=self._clock),
            session_config=self.config.session,
            emergency_config=self.config.emergency,
            clock=self._clock,
        )
        self.policy = AccessPolicy(store, self.audit, clock=self._clock)
        self.sweeper = ExpirySweeper(
            self.sessions,
            self.challenges,
            interval=self.config.sweeper.interval_seconds,
            clock=self._clock,
        )
        self._methods = methods or default_methods(self.verifier)

        if notifier is None and not self.config.expose_codes:
            logger.warning("No challenge notifier configured; codes will not be delivered")

    @property
    def store(self) -> AccessStore:
        return self._store

    async def _record_failure(
        self,
        action: AuditAction,
        error: AccessError,
        *,
        actor_id: str | None = None,
        actor_role: Role | None = None,
        patient_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        # Storage is already failing; the original error is the one to surface.
        if isinstance(error, StorageFailure):
            return
        await self.audit.append(
            action,
            actor_id=actor_id,
            actor_role=actor_role,
            patient_id=patient_id,
            details={**(details or {}), "error": error.kind.value},
        )

    async def _login(self, identity_id: str, method: AccessMethod) -> LoginResult:
        async def work():
            issued = await self.sessions.create_session(identity_id)
            session = issued.session
            action = AuditAction.OPERATOR_LOGIN if session.role is Role.OPERATOR else AuditAction.LOGIN
            await self.audit.append(
                action,
                actor_id=session.identity_id,
                actor_role=session.role,
                patient_id=_patient_scope(session.identity_id, session.role),
                details={"method": method.value, "session_id": str(session.session_id)},
            )
            return issued

        issued = await self._store.run_atomic(work)
        return LoginResult(
            identity_id=issued.session.identity_id,
            role=issued.session.role,
            expires_at=issued.session.expires_at,
            token=issued.token,
        )

    # Challenges and login

    async def request_challenge(
        self, identifier: str, purpose: ChallengePurpose | str
    ) -> ChallengeReceipt:
        """Issue a one-time code for ``identifier``.

        The response is the same whether or not the identifier belongs to an
        account; codes are only delivered where they can be used.
        """
        purpose = _parse_purpose(purpose)
        issued = await self.challenges.issue(identifier, purpose)
        identity = await self._store.find_identity(identifier.strip())

        if purpose is ChallengePurpose.REGISTRATION:
            deliverable = True
        elif purpose is ChallengePurpose.EMERGENCY_ACCESS:
            deliverable = identity is not None and identity.role is Role.DOCTOR
        else:
            deliverable = identity is not None and identity.is_active

        if deliverable and self._notifier is not None:
            await self._notifier.deliver(identifier.strip(), purpose, issued.code)

        await self.audit.append(
            AuditAction.OTP_GENERATED,
            actor_id=identity.identity_id if identity else None,
            actor_role=identity.role if identity else None,
            patient_id=_patient_scope(identity.identity_id, identity.role) if identity else None,
            details={
                "identifier": identifier,
                "purpose": purpose.value,
                "challenge_id": str(issued.challenge.challenge_id),
                "delivered": deliverable and self._notifier is not None,
            },
        )
        return ChallengeReceipt(
            purpose=purpose,
            expires_at=issued.challenge.expires_at,
            code=issued.code if self.config.expose_codes else None,
        )

    async def verify_challenge(
        self,
        identifier: str,
        code: str,
        purpose: ChallengePurpose | str = ChallengePurpose.LOGIN,
    ) -> LoginResult:
        """Log in with a one-time code."""
        purpose = _parse_purpose(purpose)
        if purpose is not ChallengePurpose.LOGIN:
            raise ValidationError(f"{purpose.value} codes are redeemed by their own operation")

        try:
            result = await self.verifier.verify_code(identifier, code, purpose)
            return await self._login(result.identity_id, AccessMethod.OTP)
        except AccessError as e:
            await self._record_failure(
                AuditAction.LOGIN_FAILED,
                e,
                details={"identifier": identifier, "method": AccessMethod.OTP.value},
            )
            raise

    async def verify_biometric(
        self, identifier: str, biometric_type: BiometricType | str, sample: bytes | str
    ) -> LoginResult:
        """Log a patient in by biometric comparison."""
        if isinstance(biometric_type, str):
            try:
                biometric_type = BiometricType(biometric_type.strip().upper())
            except ValueError as e:
                raise ValidationError(f"Unknown biometric type: {biometric_type}") from e

        try:
            result = await self.verifier.verify_biometric(identifier, biometric_type, sample)
            return await self._login(result.identity_id, AccessMethod(biometric_type.value))
        except AccessError as e:
            await self._record_failure(
                AuditAction.BIOMETRIC_VERIFICATION_FAILED,
                e,
                details={"identifier": identifier, "method": biometric_type.value},
            )
            raise

    async def register_identity(self, code: str, registration: Registration) -> Identity:
        """Create a patient account after the mobile number is proven by code."""
        mobile = (registration.mobile or "").strip()
        try:
            if not mobile or not (registration.name or "").strip():
                raise ValidationError("Name and mobile number are required")
            await self.verifier.verify_code(mobile, code, ChallengePurpose.REGISTRATION)

            identity = Identity(
                identity_id=str(uuid4()),
                role=Role.PATIENT,
                name=registration.name.strip(),
                mobile=mobile,
                email=registration.email.strip() if registration.email else None,
                emergency_contact=registration.emergency_contact,
                created_at=self._clock(),
            )

            async def work():
                await self._store.add_identity(identity)
                await self.audit.append(
                    AuditAction.PATIENT_REGISTRATION,
                    actor_id=identity.identity_id,
                    actor_role=Role.PATIENT,
                    patient_id=identity.identity_id,
                    details={"mobile": mobile},
                )

            await self._store.run_atomic(work)
        except AccessError as e:
            await self._record_failure(
                AuditAction.REGISTRATION_FAILED, e, details={"mobile": mobile}
            )
            raise

        logger.info("Registered patient %s", identity.identity_id)
        return identity

    async def enroll_biometric(
        self, token: str, biometric_type: BiometricType, sample: bytes | str
    ) -> None:
        principal = await self.sessions.require_principal(token)
        if not isinstance(principal, SessionPrincipal) or principal.role is not Role.PATIENT:
            raise Unauthorized("Only patients can enroll their own biometrics")

        async def work():
            await self.verifier.enroll_biometric(principal.identity_id, biometric_type, sample)
            await self.audit.append(
                AuditAction.BIOMETRIC_REGISTRATION,
                actor_id=principal.identity_id,
                actor_role=Role.PATIENT,
                patient_id=principal.identity_id,
                details={"type": biometric_type.value},
            )

        await self._store.run_atomic(work)

    # Emergency access

    async def _doctor_from_token(self, doctor_mobile: str, doctor_token: str | None) -> Identity:
        if not doctor_mobile or not doctor_mobile.strip():
            raise ValidationError("Doctor mobile number is required")
        if not doctor_token:
            raise Unauthorized("Biometric emergency access requires a signed-in doctor")
        principal = await self.sessions.require_principal(doctor_token)
        if not isinstance(principal, SessionPrincipal) or principal.role is not Role.DOCTOR:
            raise Unauthorized("Only doctors can request emergency access")
        doctor = await self._store.get_identity(principal.identity_id)
        if doctor is None:
            raise Unauthorized("Only doctors can request emergency access")
        if doctor.mobile != doctor_mobile.strip():
            raise Unauthorized("Session does not belong to this doctor")
        return doctor

    async def request_emergency_access(
        self,
        doctor_mobile: str,
        patient_identifier: str | None,
        reason: str,
        method: AccessMethod | str,
        proof: bytes | str,
        facility: str | None = None,
        doctor_token: str | None = None,
    ) -> IssuedGrant:
        """Break-glass: verify the request and open a time-boxed grant.

        With the OTP method the doctor proves who they are with an
        EMERGENCY_ACCESS code sent to ``doctor_mobile`` and names the patient.
        With FINGERPRINT or IRIS the signed-in doctor (``doctor_token``)
        presents the patient's biometric sample; without a patient identifier
        the sample is matched against every enrolled patient.
        """
        details: dict[str, Any] = {
            "doctor_mobile": doctor_mobile,
            "reason": reason,
            "facility": facility,
            "patient_identification": (
                "manual_identifier" if patient_identifier else "biometric_scan"
            ),
        }
        doctor_id: str | None = None
        patient_id: str | None = None

        try:
            access_method = parse_access_method(method)
            details["method"] = access_method.value if access_method else None
            if access_method is None or not (reason or "").strip():
                raise MissingJustification("A reason and verification method are required")
            if not proof:
                raise ValidationError("Verification proof is required")

            auth = self._methods[access_method]
            if auth.subject is ProofSubject.REQUESTER:
                if not patient_identifier:
                    raise ValidationError("A patient identifier is required with code verification")
                doctor_id = await auth.verify(doctor_mobile, proof)
                patient = await self._store.find_identity(patient_identifier.strip())
                if patient is None or patient.role is not Role.PATIENT:
                    raise NotFound("Patient not found")
                patient_id = patient.identity_id
            else:
                doctor = await self._doctor_from_token(doctor_mobile, doctor_token)
                doctor_id = doctor.identity_id
                patient_id = await auth.verify(patient_identifier, proof)

            return await self.sessions.grant_emergency_access(
                doctor_id,
                patient_id,
                reason,
                access_method,
                facility=facility,
                details={"patient_identification": details["patient_identification"]},
            )
        except AccessError as e:
            await self._record_failure(
                AuditAction.EMERGENCY_ACCESS_DENIED,
                e,
                actor_id=doctor_id,
                actor_role=Role.DOCTOR if doctor_id else None,
                patient_id=patient_id,
                details=details,
            )
            raise

    async def revoke_grant(self, token: str, grant_id) -> EmergencyGrant:
        """Revoke a grant as its holder, the patient it targets, or any operator."""
        principal = await self.sessions.require_principal(token)
        grant = await self.sessions.get_grant(grant_id)
        allowed = (
            principal.identity_id == grant.doctor_id
            or principal.identity_id == grant.patient_id
            or principal.role is Role.OPERATOR
        )
        if not allowed:
            raise Unauthorized("Not permitted to revoke this emergency grant")
        return await self.sessions.revoke_grant(
            grant.grant_id,
            revoked_by=principal.identity_id,
            revoked_by_role=principal.role,
        )

    async def list_active_grants(self, token: str) -> list[EmergencyGrant]:
        principal = await self.sessions.require_principal(token)
        if principal.role is not Role.DOCTOR:
            raise Unauthorized("Only doctors hold emergency grants")
        return await self.sessions.list_active_grants_for_doctor(principal.identity_id)

    async def emergency_history(self, token: str, limit: int = 50) -> list[EmergencyGrant]:
        """Emergency grants that targeted the signed-in patient, newest first."""
        principal = await self.sessions.require_principal(token)
        if not isinstance(principal, SessionPrincipal) or principal.role is not Role.PATIENT:
            raise Unauthorized("Only patients can view their emergency access history")
        return await self.sessions.list_access_history_for_patient(principal.identity_id, limit)

    # Sessions and data access

    async def validate_session(self, token: str) -> TokenStatus:
        return await self.sessions.validate_token(token)

    async def revoke_session(self, token: str) -> bool:
        """Log out. Ends the session or revokes the emergency grant behind ``token``.

        Idempotent: returns False when there was nothing left to end.
        """
        try:
            principal: Principal = self.sessions.decode_token(token)
        except Expired:
            return False
        return await self.sessions.end_token(principal, reason="logout")

    async def access_patient_record(
        self, token: str, patient_id: str, resource: str = "patient_record"
    ) -> Principal:
        """Gate a read of ``patient_id``'s records; raises Unauthorized on denial."""
        status = await self.sessions.validate_token(token)
        if not status.valid:
            principal = status.principal
            await self.audit.append(
                AuditAction.PERMISSION_DENIED,
                actor_id=principal.identity_id if principal else None,
                actor_role=principal.role if principal else None,
                patient_id=patient_id,
                details={"resource": resource, "error": status.error.value},
            )
            raise Unauthorized(status.message or "Invalid token")

        actor = await self.policy.actor_for(status.principal)
        await self.policy.authorize(actor, patient_id, resource)
        return status.principal

    # Audit

    async def query_audit(self, filters: AuditFilters | None = None) -> list[AuditEntry]:
        filters = filters or AuditFilters()
        if filters.limit is not None and filters.limit < 1:
            raise ValidationError("limit must be at least 1")
        if filters.offset < 0:
            raise ValidationError("offset must not be negative")
        if filters.limit is None:
            filters = replace(filters, limit=self.config.audit.default_query_limit)
        return await self.audit.query(filters)

    async def export_audit_csv(self, patient_id: str) -> bytes:
        return await self.audit.export_csv(patient_id)

    async def verify_audit_integrity(self) -> IntegrityReport:
        return await self.audit.verify_integrity()

    async def audit_stats(self, patient_id: str | None = None) -> AuditStats:
        return await self.audit.stats(patient_id)
