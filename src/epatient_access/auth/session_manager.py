"""Ordinary sessions and time-boxed emergency (break-glass) grants.

An emergency grant binds one doctor to one patient for a fixed window
(30 minutes by default). Every grant is committed together with its
EMERGENCY_ACCESS audit entry; revocation and expiry are audited the same way.
Expiry is evaluated on every read, so a grant never acts ACTIVE past its
deadline whether or not the sweeper has run.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from ..audit.models import ActorRole, AuditAction
from ..audit.trail import AuditTrail
from ..config import EmergencyConfig, SessionConfig
from ..errors import (
    AccessError,
    ErrorKind,
    MissingJustification,
    NotFound,
    Unauthorized,
    ValidationError,
)
from ..models import AccessMethod, EmergencyGrant, GrantStatus, Role, UserSession
from ..storage.base import AccessStore
from .tokens import GrantPrincipal, Principal, SessionPrincipal, TokenSigner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    session: UserSession
    token: str = field(repr=False)


@dataclass(frozen=True)
class IssuedGrant:
    grant: EmergencyGrant
    token: str = field(repr=False)


@dataclass(frozen=True)
class TokenStatus:
    valid: bool
    principal: Principal | None = None
    error: ErrorKind | None = None
    message: str = ""


def parse_access_method(method: AccessMethod | str | None) -> AccessMethod | None:
    if method is None or isinstance(method, AccessMethod):
        return method
    if not method.strip():
        return None
    try:
        return AccessMethod(method.strip().upper())
    except ValueError as e:
        raise ValidationError(f"Unknown verification method: {method}") from e


class SessionManager:
    def __init__(
        self,
        store: AccessStore,
        audit: AuditTrail,
        signer: TokenSigner,
        session_config: SessionConfig | None = None,
        emergency_config: EmergencyConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._audit = audit
        self._signer = signer
        self._session_config = session_config or SessionConfig()
        self._emergency_config = emergency_config or EmergencyConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def grant_window(self) -> timedelta:
        return timedelta(minutes=self._emergency_config.grant_window_minutes)

    # Ordinary sessions

    async def create_session(self, identity_id: str) -> IssuedSession:
        identity = await self._store.get_identity(identity_id)
        if identity is None:
            raise NotFound("Identity not found")
        if not identity.is_active:
            raise Unauthorized("Account is deactivated")

        now = self._clock()
        session = UserSession(
            session_id=uuid4(),
            identity_id=identity.identity_id,
            role=identity.role,
            issued_at=now,
            expires_at=now + timedelta(hours=self._session_config.session_hours),
        )
        await self._store.insert_session(session)
        logger.info("Session %s created for %s", session.session_id, identity.identity_id)
        return IssuedSession(session=session, token=self._signer.mint_session(session))

    async def end_session(self, session_id: UUID, reason: str = "logout") -> bool:
        """End an ordinary session and audit the logout.

        Returns False, writing nothing, if the session is unknown or already ended.
        """
        now = self._clock()

        async def work():
            session = await self._store.get_session(session_id)
            if session is None or not await self._store.end_session(session_id, now, reason):
                return False
            await self._audit.append(
                AuditAction.LOGOUT,
                actor_id=session.identity_id,
                actor_role=session.role,
                patient_id=session.identity_id if session.role is Role.PATIENT else None,
                details={"session_id": str(session_id), "reason": reason},
            )
            return True

        ended = await self._store.run_atomic(work)
        if ended:
            logger.info("Session %s ended: %s", session_id, reason)
        return ended

    async def end_expired_sessions(self, now: datetime | None = None) -> int:
        return await self._store.end_expired_sessions(now or self._clock())

    # Emergency grants

    async def grant_emergency_access(
        self,
        doctor_id: str,
        patient_id: str,
        reason: str | None,
        method: AccessMethod | str | None,
        facility: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> IssuedGrant:
        """Open a break-glass window for ``doctor_id`` on ``patient_id``.

        Raises:
            MissingJustification: reason or method is empty, or reason is too short.
            Unauthorized: the requester is not an active doctor, or the patient
                is deactivated.
            NotFound: the patient does not exist.
            Conflict: the doctor already holds an active grant for the patient.
            StorageFailure: the grant or its audit entry could not be written;
                neither is persisted.
        """
        reason = (reason or "").strip()
        method = parse_access_method(method)
        if not reason or method is None:
            raise MissingJustification("A reason and verification method are required")
        if len(reason) < self._emergency_config.min_reason_length:
            raise MissingJustification(
                f"Reason must be at least {self._emergency_config.min_reason_length} characters"
            )

        doctor = await self._store.get_identity(doctor_id)
        if doctor is None or doctor.role is not Role.DOCTOR or not doctor.is_active:
            raise Unauthorized("Only doctors can request emergency access")

        patient = await self._store.get_identity(patient_id)
        if patient is None or patient.role is not Role.PATIENT:
            raise NotFound("Patient not found")
        if not patient.is_active:
            raise Unauthorized("Emergency access is not available for a deactivated patient")

        now = self._clock()
        grant = EmergencyGrant(
            grant_id=uuid4(),
            doctor_id=doctor.identity_id,
            patient_id=patient.identity_id,
            reason=reason,
            method=method,
            granted_at=now,
            expires_at=now + self.grant_window,
            status=GrantStatus.ACTIVE,
            facility=facility.strip() if facility and facility.strip() else None,
        )

        async def work():
            # A stale ACTIVE row for the same pair must not block a fresh grant.
            for stale in await self._store.expire_grants(
                now, doctor_id=grant.doctor_id, patient_id=grant.patient_id
            ):
                await self._audit_expiry(stale)
            await self._store.insert_grant(grant)
            await self._audit.append(
                AuditAction.EMERGENCY_ACCESS,
                actor_id=grant.doctor_id,
                actor_role=Role.DOCTOR,
                patient_id=grant.patient_id,
                details={
                    **(details or {}),
                    "grant_id": str(grant.grant_id),
                    "method": grant.method.value,
                    "reason": grant.reason,
                    "facility": grant.facility,
                    "hospital_name": doctor.hospital_name,
                    "expires_at": grant.expires_at.isoformat(),
                },
            )

        await self._store.run_atomic(work)

        logger.warning(
            "Emergency access granted: doctor=%s patient=%s method=%s grant=%s expires=%s",
            grant.doctor_id,
            grant.patient_id,
            grant.method.value,
            grant.grant_id,
            grant.expires_at.isoformat(),
        )
        return IssuedGrant(grant=grant, token=self._signer.mint_grant(grant))

    async def _audit_expiry(self, grant: EmergencyGrant) -> None:
        await self._audit.append(
            AuditAction.EMERGENCY_SESSION_EXPIRED,
            patient_id=grant.patient_id,
            details={
                "grant_id": str(grant.grant_id),
                "doctor_id": grant.doctor_id,
                "expired_at": grant.expires_at.isoformat(),
            },
        )

    async def _expire(self, grant: EmergencyGrant) -> EmergencyGrant:
        async def work():
            updated = await self._store.transition_grant(
                grant.grant_id, GrantStatus.ACTIVE, GrantStatus.EXPIRED, grant.expires_at
            )
            if updated is not None:
                await self._audit_expiry(updated)
            return updated

        updated = await self._store.run_atomic(work)
        if updated is not None:
            logger.info("Emergency grant %s expired", grant.grant_id)
            return updated
        current = await self._store.get_grant(grant.grant_id)
        return current if current is not None else grant.as_of(grant.expires_at)

    async def _load_grant(self, grant_id: UUID, now: datetime) -> EmergencyGrant | None:
        grant = await self._store.get_grant(grant_id)
        if grant is None:
            return None
        if grant.status is GrantStatus.ACTIVE and not grant.is_active(now):
            return await self._expire(grant)
        return grant

    async def get_grant(self, grant_id: UUID) -> EmergencyGrant:
        grant = await self._load_grant(grant_id, self._clock())
        if grant is None:
            raise NotFound("Emergency grant not found")
        return grant

    async def revoke_grant(
        self,
        grant_id: UUID,
        revoked_by: str | None = None,
        revoked_by_role: Role | ActorRole | None = None,
        reason: str = "revoked",
    ) -> EmergencyGrant:
        """Revoke an ACTIVE grant. Idempotent: terminal grants are returned as-is.

        Raises:
            NotFound: no grant with this id exists.
        """
        now = self._clock()
        grant = await self._load_grant(grant_id, now)
        if grant is None:
            raise NotFound("Emergency grant not found")
        if grant.status.is_terminal:
            return grant

        async def work():
            updated = await self._store.transition_grant(
                grant_id, GrantStatus.ACTIVE, GrantStatus.REVOKED, now
            )
            if updated is None:
                return None
            await self._audit.append(
                AuditAction.EMERGENCY_SESSION_REVOKED,
                actor_id=revoked_by,
                actor_role=revoked_by_role,
                patient_id=updated.patient_id,
                details={
                    "grant_id": str(grant_id),
                    "doctor_id": updated.doctor_id,
                    "reason": reason,
                },
            )
            return updated

        updated = await self._store.run_atomic(work)
        if updated is None:
            # Lost a race with another revoke or the sweeper.
            return await self.get_grant(grant_id)

        logger.warning("Emergency grant %s revoked (%s)", grant_id, reason)
        return updated

    async def list_active_grants_for_doctor(self, doctor_id: str) -> list[EmergencyGrant]:
        now = self._clock()
        grants = await self._store.list_grants_for_doctor(doctor_id, GrantStatus.ACTIVE)
        return [g for g in grants if g.is_active(now)]

    async def list_access_history_for_patient(
        self, patient_id: str, limit: int = 50
    ) -> list[EmergencyGrant]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        now = self._clock()
        grants = await self._store.list_grants_for_patient(patient_id, limit)
        return [g.as_of(now) for g in grants]

    async def expire_stale_grants(self, now: datetime | None = None) -> list[EmergencyGrant]:
        now = now or self._clock()

        async def work():
            expired = await self._store.expire_grants(now)
            for grant in expired:
                await self._audit_expiry(grant)
            return expired

        expired = await self._store.run_atomic(work)
        if expired:
            logger.info("Expired %d emergency grants", len(expired))
        return expired

    # Tokens

    async def validate_token(self, token: str) -> TokenStatus:
        """Check a bearer token against its signature and current stored state.

        Emergency tokens are invalid once their grant is no longer ACTIVE, even
        when the signature and ``exp`` claim are still good.
        """
        try:
            principal = self._signer.decode(token)
        except AccessError as e:
            return TokenStatus(valid=False, error=e.kind, message=e.message)

        now = self._clock()
        if isinstance(principal, SessionPrincipal):
            session = await self._store.get_session(principal.session_id)
            if session is None:
                return TokenStatus(False, principal, ErrorKind.NOT_FOUND, "Session not found")
            if not session.is_active(now):
                return TokenStatus(False, principal, ErrorKind.EXPIRED, "Session has ended")
            return TokenStatus(True, principal)

        grant = await self._load_grant(principal.grant_id, now)
        if grant is None:
            return TokenStatus(False, principal, ErrorKind.NOT_FOUND, "Emergency grant not found")
        if grant.status is GrantStatus.REVOKED:
            return TokenStatus(
                False, principal, ErrorKind.UNAUTHORIZED, "Emergency access was revoked"
            )
        if grant.status is GrantStatus.EXPIRED:
            return TokenStatus(False, principal, ErrorKind.EXPIRED, "Emergency access has expired")
        return TokenStatus(True, principal)

    def decode_token(self, token: str) -> Principal:
        """Signature and expiry check only, without consulting stored state."""
        return self._signer.decode(token)

    async def require_principal(self, token: str) -> Principal:
        """Like ``validate_token`` but raises Unauthorized for any invalid token."""
        status = await self.validate_token(token)
        if not status.valid:
            raise Unauthorized(status.message or "Invalid token")
        return status.principal

    async def end_token(self, principal: Principal, reason: str = "logout") -> bool:
        """End whatever a token stands for: its session or its emergency grant."""
        if isinstance(principal, GrantPrincipal):
            before = await self.get_grant(principal.grant_id)
            after = await self.revoke_grant(
                principal.grant_id,
                revoked_by=principal.doctor_id,
                revoked_by_role=Role.DOCTOR,
                reason=reason,
            )
            return before.status is GrantStatus.ACTIVE and after.status is GrantStatus.REVOKED
        return await self.end_session(principal.session_id, reason)
