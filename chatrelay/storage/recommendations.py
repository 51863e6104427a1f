from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID, uuid4

from psycopg import Error as PsycopgError
from psycopg_pool import AsyncConnectionPool

from chatrelay.core.errors import PersistenceError

INSERT_RECOMMENDATION_SQL = """
INSERT INTO recommendations (
    id, account_number, roblox_user_id, recommendation, source_type, status, created_at
) VALUES (%s, %s, %s, %s, %s, %s, NOW())
"""

INITIAL_STATUS = "New"


@dataclass(frozen=True)
class Recommendation:
    id: str
    account_number: int
    roblox_user_id: int
    recommendation: str
    source_type: str
    status: str = INITIAL_STATUS
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class RecommendationStore(Protocol):
    async def add(
        self, account_number: int, roblox_user_id: int, ideas: str, source_type: str
    ) -> str:
        """Store a recommendation and return its id, or raise PersistenceError."""


@dataclass
class InMemoryRecommendationStore:
    items: list[Recommendation] = field(default_factory=list)

    async def add(
        self, account_number: int, roblox_user_id: int, ideas: str, source_type: str
    ) -> str:
        item = Recommendation(
            id=str(uuid4()),
            account_number=account_number,
            roblox_user_id=roblox_user_id,
            recommendation=ideas,
            source_type=source_type,
        )
        self.items.append(item)
        return item.id


class PostgresRecommendationStore:
    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def add(
        self, account_number: int, roblox_user_id: int, ideas: str, source_type: str
    ) -> str:
        recommendation_id = str(uuid4())
        try:
            async with self._pool.connection() as conn:
                await conn.execute(
                    INSERT_RECOMMENDATION_SQL,
                    [
                        UUID(recommendation_id),
                        account_number,
                        roblox_user_id,
                        ideas,
                        source_type,
                        INITIAL_STATUS,
                    ],
                )
        except PsycopgError as exc:
            raise PersistenceError(f"recommendation insert failed: {exc}") from exc
        return recommendation_id
