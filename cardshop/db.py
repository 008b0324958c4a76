"""
Postgres backend for the versioned store: one kv_entries table (key, value jsonb, version, expires_at).
Compare-and-swap is a conditional UPDATE on the version column, or INSERT ... ON CONFLICT for creation;
row-level locking in Postgres serializes writers to the same key.
"""
import json
from typing import Any

import asyncpg

from cardshop.store import KeyValueStore, Versioned

_LIVE = "(expires_at IS NULL OR expires_at > NOW())"


async def create_pool(database_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=5,
        command_timeout=60,
    )


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_entries (
                key VARCHAR(255) PRIMARY KEY,
                value JSONB NOT NULL,
                version INT NOT NULL DEFAULT 1,
                expires_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_counters (
                key VARCHAR(255) PRIMARY KEY,
                value BIGINT NOT NULL
            );
        """)


def _row_to_versioned(row: asyncpg.Record) -> Versioned:
    value = row["value"]
    if isinstance(value, str):
        value = json.loads(value)
    return Versioned(key=row["key"], value=value, version=row["version"])


class PostgresStore(KeyValueStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get(self, key: str) -> Versioned | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT key, value, version FROM kv_entries WHERE key = $1 AND {_LIVE};",
                key,
            )
        return _row_to_versioned(row) if row is not None else None

    async def put_if_version(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
        ttl_seconds: int | None = None,
    ) -> bool:
        payload = json.dumps(value)
        async with self._pool.acquire() as conn:
            if expected_version is None:
                # An expired row counts as absent and may be replaced.
                status = await conn.execute(
                    """
                    INSERT INTO kv_entries (key, value, version, expires_at, updated_at)
                    VALUES ($1, $2::jsonb, 1,
                            CASE WHEN $3::int IS NULL THEN NULL
                                 ELSE NOW() + make_interval(secs => $3::int) END,
                            NOW())
                    ON CONFLICT (key) DO UPDATE
                        SET value = EXCLUDED.value, version = 1,
                            expires_at = EXCLUDED.expires_at, updated_at = NOW()
                        WHERE kv_entries.expires_at IS NOT NULL AND kv_entries.expires_at <= NOW();
                    """,
                    key,
                    payload,
                    ttl_seconds,
                )
                return status.endswith(" 1")
            status = await conn.execute(
                f"""
                UPDATE kv_entries
                SET value = $2::jsonb, version = version + 1,
                    expires_at = CASE WHEN $4::int IS NULL THEN NULL
                                      ELSE NOW() + make_interval(secs => $4::int) END,
                    updated_at = NOW()
                WHERE key = $1 AND version = $3 AND {_LIVE};
                """,
                key,
                payload,
                expected_version,
                ttl_seconds,
            )
            return status == "UPDATE 1"

    async def delete(self, key: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM kv_entries WHERE key = $1;", key)

    async def scan(self, prefix: str) -> list[Versioned]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT key, value, version FROM kv_entries WHERE starts_with(key, $1) AND {_LIVE};",
                prefix,
            )
        return [_row_to_versioned(row) for row in rows]

    async def incr(self, key: str) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO kv_counters (key, value) VALUES ($1, 1)
                ON CONFLICT (key) DO UPDATE SET value = kv_counters.value + 1
                RETURNING value;
                """,
                key,
            )

    async def close(self) -> None:
        await self._pool.close()
