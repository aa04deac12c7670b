"""Domain records shared by the verifier, session manager, policy and storage."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from uuid import UUID


class Role(Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    OPERATOR = "OPERATOR"


class ChallengePurpose(Enum):
    LOGIN = "LOGIN"
    REGISTRATION = "REGISTRATION"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"


class ChallengeState(Enum):
    PENDING = "PENDING"
    CONSUMED = "CONSUMED"
    SUPERSEDED = "SUPERSEDED"
    EXHAUSTED = "EXHAUSTED"


class BiometricType(Enum):
    FINGERPRINT = "FINGERPRINT"
    IRIS = "IRIS"


class AccessMethod(Enum):
    """How the requester proved identity for an emergency grant."""

    OTP = "OTP"
    FINGERPRINT = "FINGERPRINT"
    IRIS = "IRIS"

    @property
    def biometric_type(self) -> BiometricType | None:
        if self is AccessMethod.OTP:
            return None
        return BiometricType(self.value)


class GrantStatus(Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"

    @property
    def is_terminal(self) -> bool:
        return self is not GrantStatus.ACTIVE


@dataclass(frozen=True)
class Identity:
    identity_id: str
    role: Role
    name: str
    mobile: str
    email: str | None = None
    facility_id: str | None = None
    hospital_name: str | None = None
    emergency_contact: str | None = None
    biometric_refs: dict[BiometricType, str] = field(default_factory=dict)
    deactivated_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "Identity":
        refs = {}
        if row.get("fingerprint_ref"):
            refs[BiometricType.FINGERPRINT] = row["fingerprint_ref"]
        if row.get("iris_ref"):
            refs[BiometricType.IRIS] = row["iris_ref"]
        return cls(
            identity_id=row["identity_id"],
            role=Role(row["role"]),
            name=row["name"],
            mobile=row["mobile"],
            email=row.get("email"),
            facility_id=row.get("facility_id"),
            hospital_name=row.get("hospital_name"),
            emergency_contact=row.get("emergency_contact"),
            biometric_refs=refs,
            deactivated_at=row.get("deactivated_at"),
            created_at=row.get("created_at"),
        )

    @property
    def is_active(self) -> bool:
        return self.deactivated_at is None

    def matches(self, identifier: str) -> bool:
        """True when identifier names this identity by id, mobile or email."""
        return identifier in (self.identity_id, self.mobile, self.email)

    def with_reference(self, biometric_type: BiometricType, handle: str) -> "Identity":
        return replace(self, biometric_refs={**self.biometric_refs, biometric_type: handle})


@dataclass(frozen=True)
class Challenge:
    challenge_id: UUID
    identifier: str
    purpose: ChallengePurpose
    code_hash: str
    state: ChallengeState
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "Challenge":
        return cls(
            challenge_id=row["challenge_id"],
            identifier=row["identifier"],
            purpose=ChallengePurpose(row["purpose"]),
            code_hash=row["code_hash"],
            state=ChallengeState(row["state"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            attempts=row.get("attempts", 0),
            consumed_at=row.get("consumed_at"),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class UserSession:
    """An ordinary authenticated session."""

    session_id: UUID
    identity_id: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    ended_at: datetime | None = None
    end_reason: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "UserSession":
        return cls(
            session_id=row["session_id"],
            identity_id=row["identity_id"],
            role=Role(row["role"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            ended_at=row.get("ended_at"),
            end_reason=row.get("end_reason"),
        )

    def is_active(self, now: datetime) -> bool:
        return self.ended_at is None and now < self.expires_at


@dataclass(frozen=True)
class EmergencyGrant:
    grant_id: UUID
    doctor_id: str
    patient_id: str
    reason: str
    method: AccessMethod
    granted_at: datetime
    expires_at: datetime
    status: GrantStatus = GrantStatus.ACTIVE
    facility: str | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "EmergencyGrant":
        return cls(
            grant_id=row["grant_id"],
            doctor_id=row["doctor_id"],
            patient_id=row["patient_id"],
            reason=row["reason"],
            method=AccessMethod(row["method"]),
            granted_at=row["granted_at"],
            expires_at=row["expires_at"],
            status=GrantStatus(row["status"]),
            facility=row.get("facility"),
            ended_at=row.get("ended_at"),
        )

    def status_at(self, now: datetime) -> GrantStatus:
        """Effective status at ``now``; an ACTIVE row past its expiry reads EXPIRED."""
        if self.status is GrantStatus.ACTIVE and now >= self.expires_at:
            return GrantStatus.EXPIRED
        return self.status

    def is_active(self, now: datetime) -> bool:
        return self.status_at(now) is GrantStatus.ACTIVE

    def minutes_remaining(self, now: datetime) -> float:
        if not self.is_active(now):
            return 0
        return max(0, (self.expires_at - now).total_seconds() / 60)

    def as_of(self, now: datetime) -> "EmergencyGrant":
        status = self.status_at(now)
        if status is self.status:
            return self
        return replace(self, status=status, ended_at=self.expires_at)
