"""Status records stored in Postgres.

Uses a ``users`` table keyed by user id; columns added over time are
migrated in place so existing databases keep working.
"""

import logging
from typing import Any, Optional

import asyncpg

from wapair.errors import StatusStoreError
from wapair.protocols import StatusRecord
from wapair.status.json_store import UPDATABLE_FIELDS

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(255) UNIQUE NOT NULL,
    phone_number VARCHAR(20) NOT NULL,
    session_id VARCHAR(255) NOT NULL,
    heroku_app VARCHAR(255),
    pairing_code VARCHAR(10),
    status VARCHAR(50) DEFAULT 'pending',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    connected_at TIMESTAMP,
    deployed_at TIMESTAMP
)
"""

# Databases created before pairing codes were tracked lack these columns
MIGRATIONS = (
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS pairing_code VARCHAR(10)",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
)

# StatusRecord field -> column
COLUMNS = {
    "status": "status",
    "pairing_code": "pairing_code",
    "app_name": "heroku_app",
    "session_id": "session_id",
    "phone_number": "phone_number",
    "connected_at": "connected_at",
    "deployed_at": "deployed_at",
}

SELECT_COLUMNS = (
    "user_id, phone_number, session_id, heroku_app, pairing_code, status, "
    "created_at, connected_at, deployed_at"
)


def _record_from_row(row: Any) -> StatusRecord:
    return StatusRecord(
        user_id=row["user_id"],
        phone_number=row["phone_number"],
        session_id=row["session_id"],
        status=row["status"],
        pairing_code=row["pairing_code"],
        app_name=row["heroku_app"],
        created_at=row["created_at"],
        connected_at=row["connected_at"],
        deployed_at=row["deployed_at"],
    )


class PostgresStatusStore:
    """Postgres-backed status store."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def connect(cls, database_url: str) -> "PostgresStatusStore":
        """Create a pool for database_url and ensure the schema exists."""
        try:
            pool = await asyncpg.create_pool(database_url)
        except (OSError, asyncpg.PostgresError) as e:
            raise StatusStoreError(f"Failed to connect to database: {e}") from e
        store = cls(pool)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Create the users table and apply column migrations."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
            for statement in MIGRATIONS:
                await conn.execute(statement)
        logger.info("Status database initialized")

    async def insert(self, record: StatusRecord) -> None:
        """Insert a record, replacing any previous row for the user."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (user_id, phone_number, session_id, status,
                                   pairing_code, heroku_app, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id)
                DO UPDATE SET phone_number = EXCLUDED.phone_number,
                              session_id = EXCLUDED.session_id,
                              status = EXCLUDED.status,
                              pairing_code = EXCLUDED.pairing_code,
                              heroku_app = EXCLUDED.heroku_app,
                              created_at = EXCLUDED.created_at,
                              connected_at = NULL,
                              deployed_at = NULL
                """,
                record.user_id,
                record.phone_number,
                record.session_id,
                record.status,
                record.pairing_code,
                record.app_name,
                record.created_at,
            )

    async def update(self, user_id: str, **fields: Any) -> None:
        """Update columns of the row for user_id.

        Raises:
            StatusStoreError: If a field name is unknown.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise StatusStoreError(f"Unknown status fields: {sorted(unknown)}")
        if not fields:
            return

        names = list(fields)
        assignments = ", ".join(
            f"{COLUMNS[name]} = ${i}" for i, name in enumerate(names, start=1)
        )
        values = [fields[name] for name in names]
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE users SET {assignments} WHERE user_id = ${len(names) + 1}",
                *values,
                user_id,
            )

    async def get_by_user(self, user_id: str) -> Optional[StatusRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SELECT_COLUMNS} FROM users WHERE user_id = $1", user_id
            )
            return _record_from_row(row) if row else None

    async def get_by_session(self, session_id: str) -> Optional[StatusRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SELECT_COLUMNS} FROM users WHERE session_id = $1",
                session_id,
            )
            return _record_from_row(row) if row else None

    async def list_recent(self, limit: int = 50) -> list[StatusRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {SELECT_COLUMNS} FROM users "
                "ORDER BY created_at DESC LIMIT $1",
                limit,
            )
            return [_record_from_row(row) for row in rows]

    async def delete_older_than(self, days: int) -> int:
        """Delete non-deployed rows created more than days ago."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM users "
                "WHERE created_at < NOW() - make_interval(days => $1) "
                "AND status != 'deployed'",
                days,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()
