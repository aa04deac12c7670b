"""Storage contract shared by the PostgreSQL and in-memory backends."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from ..audit.integrity import AuditChain
from ..audit.models import AuditEntry, AuditFilters
from ..models import (
    BiometricType,
    Challenge,
    ChallengePurpose,
    EmergencyGrant,
    GrantStatus,
    Identity,
    UserSession,
)

T = TypeVar("T")


class AccessStore(ABC):
    """Persistence for identities, challenges, sessions, grants and the audit trail.

    Every method is a single atomic storage operation. ``run_atomic`` groups
    several of them into one unit that is either fully durable or fully
    discarded. Backends raise ``StorageFailure`` for infrastructure faults and
    ``Conflict`` when a uniqueness rule is violated.
    """

    @abstractmethod
    async def run_atomic(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` so that every store call it makes commits together."""

    async def close(self) -> None:
        return None

    # Identities

    @abstractmethod
    async def get_identity(self, identity_id: str) -> Identity | None: ...

    @abstractmethod
    async def find_identity(self, identifier: str) -> Identity | None:
        """Resolve an identity by id, mobile number or email."""

    @abstractmethod
    async def add_identity(self, identity: Identity) -> Identity: ...

    @abstractmethod
    async def set_biometric_reference(
        self, identity_id: str, biometric_type: BiometricType, handle: str
    ) -> None: ...

    @abstractmethod
    async def list_biometric_candidates(self, biometric_type: BiometricType) -> list[Identity]:
        """Active patients with an enrolled reference of the given type."""

    @abstractmethod
    async def add_encounter(self, patient_id: str, facility_id: str, occurred_at: datetime) -> None:
        ...

    @abstractmethod
    async def has_encounter_at(self, patient_id: str, facility_id: str) -> bool: ...

    # Challenges

    @abstractmethod
    async def replace_challenge(self, challenge: Challenge) -> None:
        """Supersede PENDING challenges for the pair and insert ``challenge``."""

    @abstractmethod
    async def list_challenges(
        self, identifier: str, purpose: ChallengePurpose
    ) -> list[Challenge]:
        """All stored challenges for the pair, most recently issued first."""

    @abstractmethod
    async def record_failed_attempt(
        self, challenge_id: UUID, max_attempts: int
    ) -> Challenge | None:
        """Count a wrong code; the challenge turns EXHAUSTED at ``max_attempts``."""

    @abstractmethod
    async def consume_challenge(self, challenge_id: UUID, now: datetime) -> bool:
        """Compare-and-set PENDING -> CONSUMED; True only for the winning caller."""

    @abstractmethod
    async def delete_expired_challenges(self, now: datetime) -> int: ...

    # Ordinary sessions

    @abstractmethod
    async def insert_session(self, session: UserSession) -> None: ...

    @abstractmethod
    async def get_session(self, session_id: UUID) -> UserSession | None: ...

    @abstractmethod
    async def end_session(self, session_id: UUID, now: datetime, reason: str) -> bool: ...

    @abstractmethod
    async def end_expired_sessions(self, now: datetime) -> int: ...

    # Emergency grants

    @abstractmethod
    async def insert_grant(self, grant: EmergencyGrant) -> None:
        """Insert an ACTIVE grant; Conflict if the pair already holds one."""

    @abstractmethod
    async def get_grant(self, grant_id: UUID) -> EmergencyGrant | None: ...

    @abstractmethod
    async def transition_grant(
        self,
        grant_id: UUID,
        from_status: GrantStatus,
        to_status: GrantStatus,
        ended_at: datetime,
    ) -> EmergencyGrant | None:
        """Compare-and-set a grant's status; None if it was not in ``from_status``."""

    @abstractmethod
    async def find_active_grants(
        self, doctor_id: str, patient_id: str, now: datetime
    ) -> list[EmergencyGrant]:
        """Grants for the pair that are ACTIVE and unexpired at ``now``."""

    @abstractmethod
    async def list_grants_for_doctor(
        self, doctor_id: str, status: GrantStatus | None = None
    ) -> list[EmergencyGrant]:
        """Grants held by a doctor, most recent first."""

    @abstractmethod
    async def list_grants_for_patient(
        self, patient_id: str, limit: int | None = None
    ) -> list[EmergencyGrant]:
        """Grants targeting a patient, most recent first."""

    @abstractmethod
    async def expire_grants(
        self,
        now: datetime,
        doctor_id: str | None = None,
        patient_id: str | None = None,
    ) -> list[EmergencyGrant]:
        """Move ACTIVE grants with expires_at <= now to EXPIRED and return them."""

    # Audit trail

    @abstractmethod
    async def append_audit(self, entry: AuditEntry, chain: AuditChain) -> AuditEntry:
        """Seal ``entry`` onto the head of the hash chain and store it."""

    @abstractmethod
    async def query_audit(self, filters: AuditFilters) -> list[AuditEntry]:
        """Entries matching all filters, newest first."""

    @abstractmethod
    def audit_chain(self, batch_size: int = 1000) -> AsyncIterator[AuditEntry]:
        """Every entry in ascending sequence order."""
