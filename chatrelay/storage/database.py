import logging

from psycopg import Error as PsycopgError
from psycopg_pool import AsyncConnectionPool

from chatrelay.config.settings import Settings

logger = logging.getLogger("relay.storage")

SCHEMA_DDL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS account_settings (
    account_number INTEGER PRIMARY KEY,
    prompt TEXT,
    sources TEXT[] NOT NULL DEFAULT '{}',
    api_key TEXT
);

CREATE TABLE IF NOT EXISTS conversations (
    id UUID PRIMARY KEY,
    account_number INTEGER NOT NULL,
    roblox_user_id TEXT,
    roblox_username TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    last_message_at TIMESTAMPTZ NOT NULL,
    topic TEXT,
    sentiment TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversations_account_started
    ON conversations (account_number, started_at);

CREATE TABLE IF NOT EXISTS messages (
    id UUID PRIMARY KEY,
    conversation_id UUID NOT NULL REFERENCES conversations (id),
    sender TEXT NOT NULL CHECK (sender IN ('user', 'assistant')),
    content_encrypted BYTEA NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    is_troll BOOLEAN NOT NULL DEFAULT FALSE,
    source_client TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
    ON messages (conversation_id, created_at);

CREATE TABLE IF NOT EXISTS analytics (
    id UUID PRIMARY KEY,
    roblox_user_id TEXT NOT NULL,
    account_number INTEGER NOT NULL,
    country CHAR(2) NOT NULL,
    inferred_age_range TEXT,
    source_client TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS recommendations (
    id UUID PRIMARY KEY,
    account_number INTEGER NOT NULL,
    roblox_user_id BIGINT NOT NULL,
    recommendation TEXT NOT NULL,
    source_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'New',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def create_pool(settings: Settings) -> AsyncConnectionPool:
    if not settings.database_url:
        raise RuntimeError("RELAY_DATABASE_URL is required when storage_backend=postgres")
    return AsyncConnectionPool(
        conninfo=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        open=False,
    )


async def ensure_schema(pool: AsyncConnectionPool) -> None:
    async with pool.connection() as conn:
        async with conn.cursor() as cursor:
            await cursor.execute(SCHEMA_DDL)
        await conn.commit()
    logger.info("database_schema_ensured")


async def check_connection(pool: AsyncConnectionPool, timeout_s: float = 2.0) -> bool:
    try:
        async with pool.connection(timeout=timeout_s) as conn:
            async with conn.cursor() as cursor:
                await cursor.execute("SELECT 1")
                row = await cursor.fetchone()
    except PsycopgError as exc:
        logger.warning("database_check_failed", extra={"error": str(exc)})
        return False
    return row is not None
