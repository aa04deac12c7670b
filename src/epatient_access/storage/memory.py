"""In-process implementation of AccessStore.

Used by the test-suite and by single-process deployments. Each operation runs
without awaiting in its body, so it is atomic with respect to other tasks on
the same event loop. Mutations and ``run_atomic`` units are serialized by one
lock; a failing unit is rolled back to the snapshot taken when it started.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from ..audit.integrity import AuditChain
from ..audit.models import AuditEntry, AuditFilters
from ..errors import Conflict, NotFound
from ..models import (
    BiometricType,
    Challenge,
    ChallengePurpose,
    ChallengeState,
    EmergencyGrant,
    GrantStatus,
    Identity,
    Role,
    UserSession,
)
from .base import AccessStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryStore(AccessStore):
    def __init__(self):
        self._identities: dict[str, Identity] = {}
        self._encounters: set[tuple[str, str]] = set()
        self._challenges: dict[UUID, Challenge] = {}
        self._sessions: dict[UUID, UserSession] = {}
        self._grants: dict[UUID, EmergencyGrant] = {}
        self._audit: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._in_unit: ContextVar[bool] = ContextVar(f"memory_store_unit_{id(self)}", default=False)

    def _snapshot(self) -> tuple:
        return (
            dict(self._identities),
            set(self._encounters),
            dict(self._challenges),
            dict(self._sessions),
            dict(self._grants),
            list(self._audit),
        )

    def _restore(self, snapshot: tuple) -> None:
        (
            self._identities,
            self._encounters,
            self._challenges,
            self._sessions,
            self._grants,
            self._audit,
        ) = snapshot

    @asynccontextmanager
    async def _writing(self):
        if self._in_unit.get():
            yield
            return
        async with self._lock:
            yield

    async def run_atomic(self, work: Callable[[], Awaitable[T]]) -> T:
        if self._in_unit.get():
            return await work()
        async with self._lock:
            snapshot = self._snapshot()
            token = self._in_unit.set(True)
            try:
                return await work()
            except BaseException:
                self._restore(snapshot)
                logger.debug("Rolled back atomic unit")
                raise
            finally:
                self._in_unit.reset(token)

    # Identities

    async def get_identity(self, identity_id: str) -> Identity | None:
        return self._identities.get(identity_id)

    async def find_identity(self, identifier: str) -> Identity | None:
        identity = self._identities.get(identifier)
        if identity is not None:
            return identity
        for candidate in self._identities.values():
            if candidate.matches(identifier):
                return candidate
        return None

    async def add_identity(self, identity: Identity) -> Identity:
        async with self._writing():
            for existing in self._identities.values():
                if existing.identity_id == identity.identity_id:
                    raise Conflict("Identity already exists")
                if existing.mobile == identity.mobile:
                    raise Conflict("Mobile number already registered")
                if identity.email and existing.email == identity.email:
                    raise Conflict("Email already registered")
            self._identities[identity.identity_id] = identity
            return identity

    async def set_biometric_reference(
        self, identity_id: str, biometric_type: BiometricType, handle: str
    ) -> None:
        async with self._writing():
            identity = self._identities.get(identity_id)
            if identity is None:
                raise NotFound("Identity not found")
            self._identities[identity_id] = identity.with_reference(biometric_type, handle)

    async def list_biometric_candidates(self, biometric_type: BiometricType) -> list[Identity]:
        return [
            identity
            for identity in self._identities.values()
            if identity.role is Role.PATIENT
            and identity.is_active
            and biometric_type in identity.biometric_refs
        ]

    async def add_encounter(self, patient_id: str, facility_id: str, occurred_at: datetime) -> None:
        async with self._writing():
            self._encounters.add((patient_id, facility_id))

    async def has_encounter_at(self, patient_id: str, facility_id: str) -> bool:
        return (patient_id, facility_id) in self._encounters

    # Challenges

    async def replace_challenge(self, challenge: Challenge) -> None:
        async with self._writing():
            for existing in list(self._challenges.values()):
                if (
                    existing.identifier == challenge.identifier
                    and existing.purpose is challenge.purpose
                    and existing.state is ChallengeState.PENDING
                ):
                    self._challenges[existing.challenge_id] = replace(
                        existing, state=ChallengeState.SUPERSEDED
                    )
            self._challenges[challenge.challenge_id] = challenge

    async def list_challenges(
        self, identifier: str, purpose: ChallengePurpose
    ) -> list[Challenge]:
        # Reversed insertion order breaks ties between challenges issued at the same instant.
        matching = [
            c
            for c in reversed(self._challenges.values())
            if c.identifier == identifier and c.purpose is purpose
        ]
        return sorted(matching, key=lambda c: c.issued_at, reverse=True)

    async def record_failed_attempt(
        self, challenge_id: UUID, max_attempts: int
    ) -> Challenge | None:
        async with self._writing():
            challenge = self._challenges.get(challenge_id)
            if challenge is None or challenge.state is not ChallengeState.PENDING:
                return None
            attempts = challenge.attempts + 1
            state = ChallengeState.EXHAUSTED if attempts >= max_attempts else challenge.state
            updated = replace(challenge, attempts=attempts, state=state)
            self._challenges[challenge_id] = updated
            return updated

    async def consume_challenge(self, challenge_id: UUID, now: datetime) -> bool:
        async with self._writing():
            challenge = self._challenges.get(challenge_id)
            if challenge is None or challenge.state is not ChallengeState.PENDING:
                return False
            if challenge.is_expired(now):
                return False
            self._challenges[challenge_id] = replace(
                challenge, state=ChallengeState.CONSUMED, consumed_at=now
            )
            return True

    async def delete_expired_challenges(self, now: datetime) -> int:
        async with self._writing():
            expired = [cid for cid, c in self._challenges.items() if c.expires_at <= now]
            for cid in expired:
                del self._challenges[cid]
            return len(expired)

    # Ordinary sessions

    async def insert_session(self, session: UserSession) -> None:
        async with self._writing():
            if session.session_id in self._sessions:
                raise Conflict("Session already exists")
            self._sessions[session.session_id] = session

    async def get_session(self, session_id: UUID) -> UserSession | None:
        return self._sessions.get(session_id)

    async def end_session(self, session_id: UUID, now: datetime, reason: str) -> bool:
        async with self._writing():
            session = self._sessions.get(session_id)
            if session is None or session.ended_at is not None:
                return False
            self._sessions[session_id] = replace(session, ended_at=now, end_reason=reason)
            return True

    async def end_expired_sessions(self, now: datetime) -> int:
        async with self._writing():
            count = 0
            for sid, session in list(self._sessions.items()):
                if session.ended_at is None and session.expires_at <= now:
                    self._sessions[sid] = replace(
                        session, ended_at=session.expires_at, end_reason="expired"
                    )
                    count += 1
            return count

    # Emergency grants

    async def insert_grant(self, grant: EmergencyGrant) -> None:
        async with self._writing():
            for existing in self._grants.values():
                if (
                    existing.doctor_id == grant.doctor_id
                    and existing.patient_id == grant.patient_id
                    and existing.status is GrantStatus.ACTIVE
                ):
                    raise Conflict("An active emergency grant already exists for this patient")
            self._grants[grant.grant_id] = grant

    async def get_grant(self, grant_id: UUID) -> EmergencyGrant | None:
        return self._grants.get(grant_id)

    async def transition_grant(
        self,
        grant_id: UUID,
        from_status: GrantStatus,
        to_status: GrantStatus,
        ended_at: datetime,
    ) -> EmergencyGrant | None:
        async with self._writing():
            grant = self._grants.get(grant_id)
            if grant is None or grant.status is not from_status:
                return None
            updated = replace(grant, status=to_status, ended_at=ended_at)
            self._grants[grant_id] = updated
            return updated

    async def find_active_grants(
        self, doctor_id: str, patient_id: str, now: datetime
    ) -> list[EmergencyGrant]:
        return [
            g
            for g in self._grants.values()
            if g.doctor_id == doctor_id and g.patient_id == patient_id and g.is_active(now)
        ]

    async def list_grants_for_doctor(
        self, doctor_id: str, status: GrantStatus | None = None
    ) -> list[EmergencyGrant]:
        grants = [
            g
            for g in self._grants.values()
            if g.doctor_id == doctor_id and (status is None or g.status is status)
        ]
        return sorted(grants, key=lambda g: g.granted_at, reverse=True)

    async def list_grants_for_patient(
        self, patient_id: str, limit: int | None = None
    ) -> list[EmergencyGrant]:
        grants = sorted(
            (g for g in self._grants.values() if g.patient_id == patient_id),
            key=lambda g: g.granted_at,
            reverse=True,
        )
        return grants if limit is None else grants[:limit]

    async def expire_grants(
        self,
        now: datetime,
        doctor_id: str | None = None,
        patient_id: str | None = None,
    ) -> list[EmergencyGrant]:
        async with self._writing():
            expired = []
            for gid, grant in list(self._grants.items()):
                if grant.status is not GrantStatus.ACTIVE or grant.expires_at > now:
                    continue
                if doctor_id is not None and grant.doctor_id != doctor_id:
                    continue
                if patient_id is not None and grant.patient_id != patient_id:
                    continue
                updated = replace(grant, status=GrantStatus.EXPIRED, ended_at=grant.expires_at)
                self._grants[gid] = updated
                expired.append(updated)
            return expired

    # Audit trail

    async def append_audit(self, entry: AuditEntry, chain: AuditChain) -> AuditEntry:
        async with self._writing():
            if self._audit:
                head = self._audit[-1]
                previous_hash, sequence = head.entry_hash, head.sequence + 1
            else:
                previous_hash, sequence = chain.GENESIS_HASH, 1
            sealed = chain.seal(entry, previous_hash, sequence)
            self._audit.append(sealed)
            return sealed

    async def query_audit(self, filters: AuditFilters) -> list[AuditEntry]:
        matching = [e for e in self._audit if filters.matches(e)]
        matching.sort(key=lambda e: (e.created_at, e.sequence), reverse=True)
        matching = matching[filters.offset :]
        if filters.limit is not None:
            matching = matching[: filters.limit]
        return matching

    async def audit_chain(self, batch_size: int = 1000) -> AsyncIterator[AuditEntry]:
        for entry in list(self._audit):
            yield entry
