"""Schema management for the access-control tables."""

import logging
from importlib.resources import files

import asyncpg

logger = logging.getLogger(__name__)

ACCESS_TABLES = (
    "identities",
    "encounters",
    "access_challenges",
    "user_sessions",
    "emergency_grants",
    "audit_entries",
)


class AccessSchemaManager:
    async def create_schema(self, conn: asyncpg.Connection) -> None:
        sql_path = files("epatient_access.db.schema").joinpath("access_tables.sql")
        sql = sql_path.read_text()
        await conn.execute(sql)
        logger.info("Access schema created/updated")

    async def schema_exists(self, conn: asyncpg.Connection) -> bool:
        count = await conn.fetchval(
            """
            SELECT COUNT(*) FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY($1::text[])
            """,
            list(ACCESS_TABLES),
        )
        return count == len(ACCESS_TABLES)

    async def verify_immutability(self, conn: asyncpg.Connection) -> bool:
        """Check that the audit immutability trigger is installed."""
        result = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_trigger
                WHERE tgname = 'audit_immutability'
                  AND tgrelid = 'audit_entries'::regclass
            )
            """
        )
        return bool(result)

    async def get_status(self, conn: asyncpg.Connection) -> dict:
        row = await conn.fetchrow(
            """
            SELECT
                (SELECT COUNT(*) FROM identities) AS identities,
                (SELECT COUNT(*) FROM emergency_grants WHERE status = 'ACTIVE'
                    AND expires_at > NOW()) AS active_grants,
                (SELECT COUNT(*) FROM user_sessions WHERE ended_at IS NULL
                    AND expires_at > NOW()) AS open_sessions,
                (SELECT COUNT(*) FROM audit_entries) AS audit_entries
            """
        )
        return dict(row) if row else {}
