import asyncio
import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any, Protocol

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

logger = logging.getLogger("relay.tenants")

SELECT_TENANT_SQL = (
    "SELECT account_number, prompt, sources, api_key "
    "FROM account_settings "
    "WHERE account_number = %s"
)

# COALESCE keeps a key written by a concurrent backfill instead of replacing it.
BACKFILL_API_KEY_SQL = (
    "UPDATE account_settings "
    "SET api_key = COALESCE(NULLIF(api_key, ''), %s) "
    "WHERE account_number = %s "
    "RETURNING api_key"
)


@dataclass(frozen=True)
class TenantSettings:
    account_number: int
    api_key: str | None = None
    sources: tuple[str, ...] = ()
    prompt: str | None = None

    @property
    def default_source(self) -> str | None:
        return self.sources[0] if self.sources else None

    def allows_source(self, source: str) -> bool:
        return not self.sources or source in self.sources


class TenantDirectory(Protocol):
    async def get(self, account_number: int) -> TenantSettings | None:
        """Return the tenant record, backfilling a missing API key, or None if unknown."""


def generate_api_key() -> str:
    return secrets.token_urlsafe(32)


def normalize_sources(raw: Iterable[Any] | None) -> tuple[str, ...]:
    if raw is None:
        return ()
    normalized: list[str] = []
    for value in raw:
        if value is None:
            continue
        item = str(value).strip()
        if item and item not in normalized:
            normalized.append(item)
    return tuple(normalized)


def tenant_from_record(record: dict[str, Any]) -> TenantSettings:
    prompt = record.get("prompt")
    api_key = record.get("api_key")
    return TenantSettings(
        account_number=int(record["account_number"]),
        api_key=str(api_key) if api_key else None,
        sources=normalize_sources(record.get("sources")),
        prompt=str(prompt) if prompt else None,
    )


class InMemoryTenantDirectory:
    def __init__(self, tenants: Iterable[TenantSettings] = ()):
        self._tenants: dict[int, TenantSettings] = {
            tenant.account_number: tenant for tenant in tenants
        }
        self._lock = asyncio.Lock()

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> "InMemoryTenantDirectory":
        return cls(tenant_from_record(record) for record in records)

    def put(self, tenant: TenantSettings) -> None:
        self._tenants[tenant.account_number] = tenant

    async def get(self, account_number: int) -> TenantSettings | None:
        async with self._lock:
            tenant = self._tenants.get(account_number)
            if tenant is None:
                return None
            if not tenant.api_key:
                tenant = replace(tenant, api_key=generate_api_key())
                self._tenants[account_number] = tenant
                logger.info(
                    "tenant_api_key_backfilled",
                    extra={"account_number": account_number},
                )
            return tenant


class PostgresTenantDirectory:
    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def get(self, account_number: int) -> TenantSettings | None:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(SELECT_TENANT_SQL, [account_number])
                row = await cursor.fetchone()
                if row is None:
                    return None
                if not row.get("api_key"):
                    await cursor.execute(
                        BACKFILL_API_KEY_SQL, [generate_api_key(), account_number]
                    )
                    backfilled = await cursor.fetchone()
                    row = {**row, "api_key": backfilled["api_key"] if backfilled else None}
                    logger.info(
                        "tenant_api_key_backfilled",
                        extra={"account_number": account_number},
                    )
        return tenant_from_record(row)
