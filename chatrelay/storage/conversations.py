"""Transactional persistence of one relayed exchange.

Each exchange writes, in a single transaction and in this order: the conversation
merge-upsert, the user message, the assistant message and, when both an end-user id and
a country code are known, one analytics row.

The conversation merge is commutative for concurrent writers on the same id:
``last_message_at`` only moves forward, and the end-user and label columns are filled
only while they are still null, so the first committed value is never overwritten.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import UUID, uuid4

from psycopg import Error as PsycopgError
from psycopg_pool import AsyncConnectionPool

from chatrelay.core.errors import PersistenceError
from chatrelay.enrichment.classifier import ClassificationResult

MIN_ENCRYPTION_KEY_LENGTH = 16

UPSERT_CONVERSATION_SQL = """
INSERT INTO conversations (
    id, account_number, roblox_user_id, roblox_username,
    started_at, last_message_at, topic, sentiment
) VALUES (
    %(id)s, %(account_number)s, %(roblox_user_id)s, %(roblox_username)s,
    %(started_at)s, %(last_message_at)s, %(topic)s, %(sentiment)s
)
ON CONFLICT (id) DO UPDATE SET
    last_message_at = GREATEST(conversations.last_message_at, EXCLUDED.last_message_at),
    roblox_user_id = COALESCE(conversations.roblox_user_id, EXCLUDED.roblox_user_id),
    roblox_username = COALESCE(conversations.roblox_username, EXCLUDED.roblox_username),
    topic = COALESCE(conversations.topic, EXCLUDED.topic),
    sentiment = COALESCE(conversations.sentiment, EXCLUDED.sentiment)
"""

INSERT_MESSAGE_SQL = """
INSERT INTO messages (
    id, conversation_id, sender, content_encrypted, created_at, is_troll, source_client
) VALUES (
    %(id)s, %(conversation_id)s, %(sender)s, pgp_sym_encrypt(%(content)s, %(key)s),
    %(created_at)s, %(is_troll)s, %(source_client)s
)
"""

INSERT_ANALYTICS_SQL = """
INSERT INTO analytics (
    id, roblox_user_id, account_number, country, inferred_age_range, source_client, created_at
) VALUES (
    %(id)s, %(roblox_user_id)s, %(account_number)s, %(country)s, NULL,
    %(source_client)s, %(created_at)s
)
"""


@dataclass(frozen=True)
class ExchangeRecord:
    conversation_id: str
    account_number: int
    user_message: str
    assistant_message: str
    received_at: datetime
    replied_at: datetime
    player_id: str | None = None
    player_username: str | None = None
    country: str | None = None
    source_client: str | None = None

    @property
    def wants_analytics(self) -> bool:
        return bool(self.player_id) and bool(self.country) and len(self.country or "") == 2


class ConversationStore(Protocol):
    async def record_exchange(
        self, exchange: ExchangeRecord, labels: ClassificationResult
    ) -> None:
        """Persist the exchange atomically or raise PersistenceError."""


@dataclass
class StoredConversation:
    id: str
    account_number: int
    roblox_user_id: str | None
    roblox_username: str | None
    started_at: datetime
    last_message_at: datetime
    topic: str | None
    sentiment: str | None


@dataclass(frozen=True)
class StoredMessage:
    id: str
    conversation_id: str
    sender: str
    content: str
    created_at: datetime
    is_troll: bool
    source_client: str | None


@dataclass(frozen=True)
class StoredAnalytics:
    id: str
    roblox_user_id: str
    account_number: int
    country: str
    inferred_age_range: str | None
    source_client: str | None
    created_at: datetime


def merge_conversation(
    existing: StoredConversation | None,
    exchange: ExchangeRecord,
    labels: ClassificationResult,
) -> StoredConversation:
    if existing is None:
        return StoredConversation(
            id=exchange.conversation_id,
            account_number=exchange.account_number,
            roblox_user_id=exchange.player_id,
            roblox_username=exchange.player_username,
            started_at=exchange.received_at,
            last_message_at=exchange.replied_at,
            topic=labels.topic,
            sentiment=labels.sentiment,
        )
    return StoredConversation(
        id=existing.id,
        account_number=existing.account_number,
        roblox_user_id=existing.roblox_user_id or exchange.player_id,
        roblox_username=existing.roblox_username or exchange.player_username,
        started_at=existing.started_at,
        last_message_at=max(existing.last_message_at, exchange.replied_at),
        topic=existing.topic if existing.topic is not None else labels.topic,
        sentiment=existing.sentiment if existing.sentiment is not None else labels.sentiment,
    )


def exchange_messages(
    exchange: ExchangeRecord, labels: ClassificationResult
) -> tuple[StoredMessage, StoredMessage]:
    user_message = StoredMessage(
        id=str(uuid4()),
        conversation_id=exchange.conversation_id,
        sender="user",
        content=exchange.user_message,
        created_at=exchange.received_at,
        is_troll=labels.is_troll,
        source_client=exchange.source_client,
    )
    assistant_message = StoredMessage(
        id=str(uuid4()),
        conversation_id=exchange.conversation_id,
        sender="assistant",
        content=exchange.assistant_message,
        created_at=exchange.replied_at,
        is_troll=False,
        source_client=exchange.source_client,
    )
    return user_message, assistant_message


def exchange_analytics(exchange: ExchangeRecord) -> StoredAnalytics | None:
    if not exchange.player_id or not exchange.country or not exchange.wants_analytics:
        return None
    return StoredAnalytics(
        id=str(uuid4()),
        roblox_user_id=exchange.player_id,
        account_number=exchange.account_number,
        country=exchange.country,
        inferred_age_range=None,
        source_client=exchange.source_client,
        created_at=exchange.replied_at,
    )


@dataclass
class InMemoryConversationStore:
    """Process-local store for development and tests.

    Writes are staged and applied under one lock, so a failure leaves nothing behind.
    Content is held in plain text since nothing is written to disk.
    """

    conversations: dict[str, StoredConversation] = field(default_factory=dict)
    messages: list[StoredMessage] = field(default_factory=list)
    analytics: list[StoredAnalytics] = field(default_factory=list)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def record_exchange(
        self, exchange: ExchangeRecord, labels: ClassificationResult
    ) -> None:
        async with self._lock:
            conversation = merge_conversation(
                self.conversations.get(exchange.conversation_id), exchange, labels
            )
            staged_messages = exchange_messages(exchange, labels)
            staged_analytics = exchange_analytics(exchange)

            self.conversations[conversation.id] = conversation
            self.messages.extend(staged_messages)
            if staged_analytics is not None:
                self.analytics.append(staged_analytics)

    def messages_for(self, conversation_id: str) -> list[StoredMessage]:
        return [item for item in self.messages if item.conversation_id == conversation_id]


class PostgresConversationStore:
    def __init__(self, pool: AsyncConnectionPool, encryption_key: str | None):
        if not encryption_key or len(encryption_key) < MIN_ENCRYPTION_KEY_LENGTH:
            raise RuntimeError(
                "RELAY_MESSAGE_ENCRYPTION_KEY must be at least "
                f"{MIN_ENCRYPTION_KEY_LENGTH} characters"
            )
        self._pool = pool
        self._encryption_key = encryption_key

    async def record_exchange(
        self, exchange: ExchangeRecord, labels: ClassificationResult
    ) -> None:
        user_message, assistant_message = exchange_messages(exchange, labels)
        analytics = exchange_analytics(exchange)
        try:
            async with self._pool.connection() as conn:
                async with conn.transaction():
                    await conn.execute(
                        UPSERT_CONVERSATION_SQL,
                        {
                            "id": UUID(exchange.conversation_id),
                            "account_number": exchange.account_number,
                            "roblox_user_id": exchange.player_id,
                            "roblox_username": exchange.player_username,
                            "started_at": exchange.received_at,
                            "last_message_at": exchange.replied_at,
                            "topic": labels.topic,
                            "sentiment": labels.sentiment,
                        },
                    )
                    for message in (user_message, assistant_message):
                        await conn.execute(INSERT_MESSAGE_SQL, self._message_params(message))
                    if analytics is not None:
                        await conn.execute(
                            INSERT_ANALYTICS_SQL,
                            {
                                "id": UUID(analytics.id),
                                "roblox_user_id": analytics.roblox_user_id,
                                "account_number": analytics.account_number,
                                "country": analytics.country,
                                "source_client": analytics.source_client,
                                "created_at": analytics.created_at,
                            },
                        )
        except PsycopgError as exc:
            raise PersistenceError(
                f"exchange transaction for conversation {exchange.conversation_id} "
                f"rolled back: {type(exc).__name__}: {exc}"
            ) from exc

    def _message_params(self, message: StoredMessage) -> dict[str, object]:
        return {
            "id": UUID(message.id),
            "conversation_id": UUID(message.conversation_id),
            "sender": message.sender,
            "content": message.content,
            "key": self._encryption_key,
            "created_at": message.created_at,
            "is_troll": message.is_troll,
            "source_client": message.source_client,
        }
