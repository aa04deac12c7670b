"""PostgreSQL implementation of AccessStore on an asyncpg pool."""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextvars import ContextVar
from datetime import datetime
from typing import TypeVar
from uuid import UUID

import asyncpg

from ..audit.integrity import AuditChain
from ..audit.models import AuditEntry, AuditFilters
from ..config import StorageConfig
from ..errors import AccessError, Conflict, NotFound, StorageFailure
from ..models import (
    BiometricType,
    Challenge,
    ChallengePurpose,
    EmergencyGrant,
    GrantStatus,
    Identity,
    UserSession,
)
from .base import AccessStore
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    ConnectionError,
    TimeoutError,
)

STORAGE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    TimeoutError,
)

# Key for pg_advisory_xact_lock guarding the head of the audit hash chain.
AUDIT_CHAIN_LOCK_ID = 0x45_41_55_44

REFERENCE_COLUMNS = {
    BiometricType.FINGERPRINT: "fingerprint_ref",
    BiometricType.IRIS: "iris_ref",
}


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 1'."""
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresStore(AccessStore):
    """AccessStore backed by PostgreSQL.

    Standalone calls acquire a pooled connection and are retried on transient
    errors by the store's ``RetryPolicy``. Calls made inside ``run_atomic``
    share that unit's transaction; there the whole unit is retried, never a
    single statement.
    """

    def __init__(self, pool: asyncpg.Pool, retry_policy: RetryPolicy | None = None):
        self._pool = pool
        self._retry = retry_policy or RetryPolicy()
        self._tx_conn: ContextVar[asyncpg.Connection | None] = ContextVar(
            f"postgres_store_tx_{id(self)}", default=None
        )

    @classmethod
    async def connect(
        cls,
        dsn: str,
        config: StorageConfig | None = None,
        password: str | None = None,
        ssl: bool | str | None = None,
    ) -> "PostgresStore":
        config = config or StorageConfig()
        pool = await asyncpg.create_pool(
            dsn,
            password=password,
            ssl=ssl,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
            command_timeout=config.command_timeout,
            init=_init_connection,
        )
        policy = RetryPolicy(
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        )
        logger.info("Connected storage pool (max %d connections)", config.max_pool_size)
        return cls(pool, policy)

    async def close(self) -> None:
        await self._pool.close()

    async def _guard(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        try:
            return await self._retry.run(operation, TRANSIENT_ERRORS, description)
        except AccessError:
            raise
        except STORAGE_ERRORS as e:
            logger.error("%s failed: %s", description, type(e).__name__)
            raise StorageFailure(f"{description} failed") from e

    async def _run(
        self, description: str, op: Callable[[asyncpg.Connection], Awaitable[T]]
    ) -> T:
        conn = self._tx_conn.get()
        if conn is not None:
            return await op(conn)

        async def attempt() -> T:
            async with self._pool.acquire() as conn:
                return await op(conn)

        return await self._guard(attempt, description)

    async def run_atomic(self, work: Callable[[], Awaitable[T]]) -> T:
        if self._tx_conn.get() is not None:
            return await work()

        async def attempt() -> T:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    token = self._tx_conn.set(conn)
                    try:
                        return await work()
                    finally:
                        self._tx_conn.reset(token)

        return await self._guard(attempt, "atomic unit")

    # Identities

    async def get_identity(self, identity_id: str) -> Identity | None:
        async def op(conn):
            return await conn.fetchrow(
                "SELECT * FROM identities WHERE identity_id = $1", identity_id
            )

        row = await self._run("get identity", op)
        return Identity.from_db_row(dict(row)) if row else None

    async def find_identity(self, identifier: str) -> Identity | None:
        async def op(conn):
            return await conn.fetchrow(
                """
                SELECT * FROM identities
                WHERE identity_id = $1 OR mobile = $1 OR email = $1
                ORDER BY (identity_id = $1) DESC
                LIMIT 1
                """,
                identifier,
            )

        row = await self._run("find identity", op)
        return Identity.from_db_row(dict(row)) if row else None

    async def add_identity(self, identity: Identity) -> Identity:
        async def op(conn):
            try:
                await conn.execute(
                    """
                    INSERT INTO identities (
                        identity_id, role, name, mobile, email, facility_id,
                        hospital_name, emergency_contact, fingerprint_ref, iris_ref,
                        deactivated_at, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, COALESCE($12, NOW()))
                    """,
                    identity.identity_id,
                    identity.role.value,
                    identity.name,
                    identity.mobile,
                    identity.email,
                    identity.facility_id,
                    identity.hospital_name,
                    identity.emergency_contact,
                    identity.biometric_refs.get(BiometricType.FINGERPRINT),
                    identity.biometric_refs.get(BiometricType.IRIS),
                    identity.deactivated_at,
                    identity.created_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise Conflict("Identity with this mobile or email already exists") from e

        await self._run("add identity", op)
        return identity

    async def set_biometric_reference(
        self, identity_id: str, biometric_type: BiometricType, handle: str
    ) -> None:
        column = REFERENCE_COLUMNS[biometric_type]

        async def op(conn):
            return await conn.execute(
                f"UPDATE identities SET {column} = $2 WHERE identity_id = $1",
                identity_id,
                handle,
            )

        if _affected(await self._run("set biometric reference", op)) == 0:
            raise NotFound("Identity not found")

    async def list_biometric_candidates(self, biometric_type: BiometricType) -> list[Identity]:
        column = REFERENCE_COLUMNS[biometric_type]

        async def op(conn):
            return await conn.fetch(
                f"""
                SELECT * FROM identities
                WHERE role = 'PATIENT' AND deactivated_at IS NULL AND {column} IS NOT NULL
                ORDER BY created_at, identity_id
                """
            )

        rows = await self._run("list biometric candidates", op)
        return [Identity.from_db_row(dict(r)) for r in rows]

    async def add_encounter(self, patient_id: str, facility_id: str, occurred_at: datetime) -> None:
        async def op(conn):
            await conn.execute(
                "INSERT INTO encounters (patient_id, facility_id, occurred_at) VALUES ($1, $2, $3)",
                patient_id,
                facility_id,
                occurred_at,
            )

        await self._run("add encounter", op)

    async def has_encounter_at(self, patient_id: str, facility_id: str) -> bool:
        async def op(conn):
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM encounters WHERE patient_id = $1 AND facility_id = $2
                )
                """,
                patient_id,
                facility_id,
            )

        return bool(await self._run("check facility membership", op))

    # Challenges

    async def replace_challenge(self, challenge: Challenge) -> None:
        async def op(conn):
            await conn.execute(
                """
                UPDATE access_challenges SET state = 'SUPERSEDED'
                WHERE identifier = $1 AND purpose = $2 AND state = 'PENDING'
                """,
                challenge.identifier,
                challenge.purpose.value,
            )
            try:
                await conn.execute(
                    """
                    INSERT INTO access_challenges (
                        challenge_id, identifier, purpose, code_hash, state,
                        attempts, issued_at, expires_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    challenge.challenge_id,
                    challenge.identifier,
                    challenge.purpose.value,
                    challenge.code_hash,
                    challenge.state.value,
                    challenge.attempts,
                    challenge.issued_at,
                    challenge.expires_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise Conflict("A concurrent challenge was issued; request a new code") from e

        async def work():
            await self._run("issue challenge", op)

        await self.run_atomic(work)

    async def list_challenges(
        self, identifier: str, purpose: ChallengePurpose
    ) -> list[Challenge]:
        async def op(conn):
            return await conn.fetch(
                """
                SELECT * FROM access_challenges
                WHERE identifier = $1 AND purpose = $2
                ORDER BY issued_at DESC, issue_seq DESC
                """,
                identifier,
                purpose.value,
            )

        rows = await self._run("list challenges", op)
        return [Challenge.from_db_row(dict(r)) for r in rows]

    async def record_failed_attempt(
        self, challenge_id: UUID, max_attempts: int
    ) -> Challenge | None:
        async def op(conn):
            return await conn.fetchrow(
                """
                UPDATE access_challenges
                SET attempts = attempts + 1,
                    state = CASE WHEN attempts + 1 >= $2 THEN 'EXHAUSTED' ELSE state END
                WHERE challenge_id = $1 AND state = 'PENDING'
                RETURNING *
                """,
                challenge_id,
                max_attempts,
            )

        row = await self._run("record failed attempt", op)
        return Challenge.from_db_row(dict(row)) if row else None

    async def consume_challenge(self, challenge_id: UUID, now: datetime) -> bool:
        async def op(conn):
            return await conn.execute(
                """
                UPDATE access_challenges SET state = 'CONSUMED', consumed_at = $2
                WHERE challenge_id = $1 AND state = 'PENDING' AND expires_at > $2
                """,
                challenge_id,
                now,
            )

        return _affected(await self._run("consume challenge", op)) == 1

    async def delete_expired_challenges(self, now: datetime) -> int:
        async def op(conn):
            return await conn.execute(
                "DELETE FROM access_challenges WHERE expires_at <= $1", now
            )

        return _affected(await self._run("purge challenges", op))

    # Ordinary sessions

    async def insert_session(self, session: UserSession) -> None:
        async def op(conn):
            try:
                await conn.execute(
                    """
                    INSERT INTO user_sessions (session_id, identity_id, role, issued_at, expires_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    session.session_id,
                    session.identity_id,
                    session.role.value,
                    session.issued_at,
                    session.expires_at,
                )
            except asyncpg.ForeignKeyViolationError as e:
                raise NotFound("Identity not found") from e

        await self._run("create session", op)

    async def get_session(self, session_id: UUID) -> UserSession | None:
        async def op(conn):
            return await conn.fetchrow(
                "SELECT * FROM user_sessions WHERE session_id = $1", session_id
            )

        row = await self._run("get session", op)
        return UserSession.from_db_row(dict(row)) if row else None

    async def end_session(self, session_id: UUID, now: datetime, reason: str) -> bool:
        async def op(conn):
            return await conn.execute(
                """
                UPDATE user_sessions SET ended_at = $2, end_reason = $3
                WHERE session_id = $1 AND ended_at IS NULL
                """,
                session_id,
                now,
                reason,
            )

        return _affected(await self._run("end session", op)) == 1

    async def end_expired_sessions(self, now: datetime) -> int:
        async def op(conn):
            return await conn.execute(
                """
                UPDATE user_sessions SET ended_at = expires_at, end_reason = 'expired'
                WHERE ended_at IS NULL AND expires_at <= $1
                """,
                now,
            )

        return _affected(await self._run("end expired sessions", op))

    # Emergency grants

    async def insert_grant(self, grant: EmergencyGrant) -> None:
        async def op(conn):
            try:
                await conn.execute(
                    """
                    INSERT INTO emergency_grants (
                        grant_id, doctor_id, patient_id, reason, method, facility,
                        granted_at, expires_at, status
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    grant.grant_id,
                    grant.doctor_id,
                    grant.patient_id,
                    grant.reason,
                    grant.method.value,
                    grant.facility,
                    grant.granted_at,
                    grant.expires_at,
                    grant.status.value,
                )
            except asyncpg.UniqueViolationError as e:
                raise Conflict(
                    "An active emergency grant already exists for this patient"
                ) from e
            except asyncpg.ForeignKeyViolationError as e:
                raise NotFound("Doctor or patient not found") from e

        await self._run("create emergency grant", op)

    async def get_grant(self, grant_id: UUID) -> EmergencyGrant | None:
        async def op(conn):
            return await conn.fetchrow(
                "SELECT * FROM emergency_grants WHERE grant_id = $1", grant_id
            )

        row = await self._run("get emergency grant", op)
        return EmergencyGrant.from_db_row(dict(row)) if row else None

    async def transition_grant(
        self,
        grant_id: UUID,
        from_status: GrantStatus,
        to_status: GrantStatus,
        ended_at: datetime,
    ) -> EmergencyGrant | None:
        async def op(conn):
            return await conn.fetchrow(
                """
                UPDATE emergency_grants SET status = $3, ended_at = $4
                WHERE grant_id = $1 AND status = $2
                RETURNING *
                """,
                grant_id,
                from_status.value,
                to_status.value,
                ended_at,
            )

        row = await self._run("update emergency grant", op)
        return EmergencyGrant.from_db_row(dict(row)) if row else None

    async def find_active_grants(
        self, doctor_id: str, patient_id: str, now: datetime
    ) -> list[EmergencyGrant]:
        async def op(conn):
            return await conn.fetch(
                """
                SELECT * FROM emergency_grants
                WHERE doctor_id = $1 AND patient_id = $2
                  AND status = 'ACTIVE' AND expires_at > $3
                """,
                doctor_id,
                patient_id,
                now,
            )

        rows = await self._run("find active grants", op)
        return [EmergencyGrant.from_db_row(dict(r)) for r in rows]

    async def list_grants_for_doctor(
        self, doctor_id: str, status: GrantStatus | None = None
    ) -> list[EmergencyGrant]:
        async def op(conn):
            return await conn.fetch(
                """
                SELECT * FROM emergency_grants
                WHERE doctor_id = $1 AND ($2::text IS NULL OR status = $2)
                ORDER BY granted_at DESC
                """,
                doctor_id,
                status.value if status else None,
            )

        rows = await self._run("list doctor grants", op)
        return [EmergencyGrant.from_db_row(dict(r)) for r in rows]

    async def list_grants_for_patient(
        self, patient_id: str, limit: int | None = None
    ) -> list[EmergencyGrant]:
        async def op(conn):
            return await conn.fetch(
                """
                SELECT * FROM emergency_grants
                WHERE patient_id = $1
                ORDER BY granted_at DESC
                LIMIT $2
                """,
                patient_id,
                limit,
            )

        rows = await self._run("list patient grants", op)
        return [EmergencyGrant.from_db_row(dict(r)) for r in rows]

    async def expire_grants(
        self,
        now: datetime,
        doctor_id: str | None = None,
        patient_id: str | None = None,
    ) -> list[EmergencyGrant]:
        async def op(conn):
            return await conn.fetch(
                """
                UPDATE emergency_grants SET status = 'EXPIRED', ended_at = expires_at
                WHERE status = 'ACTIVE' AND expires_at <= $1
                  AND ($2::text IS NULL OR doctor_id = $2)
                  AND ($3::text IS NULL OR patient_id = $3)
                RETURNING *
                """,
                now,
                doctor_id,
                patient_id,
            )

        rows = await self._run("expire emergency grants", op)
        return [EmergencyGrant.from_db_row(dict(r)) for r in rows]

    # Audit trail

    async def append_audit(self, entry: AuditEntry, chain: AuditChain) -> AuditEntry:
        async def op(conn):
            await conn.execute("SELECT pg_advisory_xact_lock($1)", AUDIT_CHAIN_LOCK_ID)
            head = await conn.fetchrow(
                "SELECT sequence, entry_hash FROM audit_entries ORDER BY sequence DESC LIMIT 1"
            )
            if head:
                previous_hash, sequence = head["entry_hash"], head["sequence"] + 1
            else:
                previous_hash, sequence = chain.GENESIS_HASH, 1
            sealed = chain.seal(entry, previous_hash, sequence)
            await conn.execute(
                """
                INSERT INTO audit_entries (
                    sequence, entry_id, created_at, actor_id, actor_role, patient_id,
                    action, details, previous_hash, entry_hash
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                sealed.sequence,
                sealed.entry_id,
                sealed.created_at,
                sealed.actor_id,
                sealed.actor_role.value,
                sealed.patient_id,
                sealed.action.value,
                sealed.details,
                sealed.previous_hash,
                sealed.entry_hash,
            )
            return sealed

        async def work():
            return await self._run("append audit entry", op)

        return await self.run_atomic(work)

    async def query_audit(self, filters: AuditFilters) -> list[AuditEntry]:
        clauses: list[str] = []
        params: list = []

        def add(template: str, value) -> None:
            params.append(value)
            clauses.append(template.format(n=len(params)))

        if filters.patient_id is not None:
            add("patient_id = ${n}", filters.patient_id)
        if filters.actor_id is not None:
            add("actor_id = ${n}", filters.actor_id)
        if filters.actor_role is not None:
            add("actor_role = ${n}", filters.actor_role.value)
        if filters.action is not None:
            add("action = ${n}", filters.action.value)
        if filters.start is not None:
            add("created_at >= ${n}", filters.start)
        if filters.end is not None:
            add("created_at <= ${n}", filters.end)
        if filters.search:
            add("details::text ILIKE ${n}", f"%{filters.search}%")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(filters.limit)
        limit_n = len(params)
        params.append(filters.offset)
        offset_n = len(params)
        sql = (
            f"SELECT * FROM audit_entries {where} "
            f"ORDER BY created_at DESC, sequence DESC LIMIT ${limit_n} OFFSET ${offset_n}"
        )

        async def op(conn):
            return await conn.fetch(sql, *params)

        rows = await self._run("query audit trail", op)
        return [AuditEntry.from_db_row(dict(r)) for r in rows]

    async def audit_chain(self, batch_size: int = 1000) -> AsyncIterator[AuditEntry]:
        last_sequence = 0
        while True:

            async def op(conn, after=last_sequence):
                return await conn.fetch(
                    "SELECT * FROM audit_entries WHERE sequence > $1 ORDER BY sequence LIMIT $2",
                    after,
                    batch_size,
                )

            rows = await self._run("read audit chain", op)
            if not rows:
                return
            for row in rows:
                entry = AuditEntry.from_db_row(dict(row))
                last_sequence = entry.sequence
                yield entry
