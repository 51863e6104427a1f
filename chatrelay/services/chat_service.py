import logging
from datetime import UTC, datetime
from time import perf_counter
from uuid import uuid4

from fastapi import Request

from chatrelay.auth.gate import AuthorizationGate
from chatrelay.background.runner import DetachedTaskRunner
from chatrelay.core.errors import PersistenceError, UpstreamError, request_id_from_request
from chatrelay.enrichment.classifier import MessageClassifier
from chatrelay.metrics import record_persistence, record_relay
from chatrelay.models.chat import ChatRequest
from chatrelay.providers.base import GenerationProvider, ProviderError
from chatrelay.relay.events import RelayedReply
from chatrelay.relay.prompt import build_prompt
from chatrelay.storage.conversations import ConversationStore, ExchangeRecord

logger = logging.getLogger("relay.chat")


class ChatService:
    def __init__(
        self,
        gate: AuthorizationGate,
        generator: GenerationProvider,
        classifier: MessageClassifier,
        store: ConversationStore,
        runner: DetachedTaskRunner,
    ):
        self._gate = gate
        self._generator = generator
        self._classifier = classifier
        self._store = store
        self._runner = runner

    async def handle_chat(
        self, request: Request, payload: ChatRequest
    ) -> tuple[RelayedReply, ExchangeRecord]:
        """Authorize, then generate the full reply before anything is streamed.

        Raises AuthError, InvalidSourceError or UpstreamError; on success the caller owns
        streaming the reply and handing the exchange to :meth:`schedule_persistence`.
        """
        request_id = request_id_from_request(request)
        received_at = datetime.now(UTC)

        access = await self._gate.authorize(
            account_number=payload.account_number,
            api_key=request.headers.get("x-api-key"),
            source_client=payload.source_client,
        )
        conversation_id = str(payload.conversation_id or uuid4())
        prompt = build_prompt(payload.message, access.tenant.prompt)

        started = perf_counter()
        try:
            reply = await self._generator.generate(prompt)
        except ProviderError as exc:
            latency_s = perf_counter() - started
            record_relay(self._generator.name, 502, latency_s)
            logger.warning(
                "upstream_generation_failed",
                extra={
                    "request_id": request_id,
                    "account_number": payload.account_number,
                    "conversation_id": conversation_id,
                    "provider": self._generator.name,
                    "status_code": exc.status_code,
                    "latency_ms": round(latency_s * 1000, 2),
                    "error": exc.code,
                },
            )
            raise UpstreamError() from exc

        latency_s = perf_counter() - started
        record_relay(self._generator.name, 200, latency_s)
        logger.info(
            "chat_relay_completed",
            extra={
                "request_id": request_id,
                "account_number": payload.account_number,
                "conversation_id": conversation_id,
                "source_client": access.source_client,
                "provider": self._generator.name,
                "latency_ms": round(latency_s * 1000, 2),
            },
        )

        relayed = RelayedReply(
            conversation_id=conversation_id,
            received_at=received_at,
            text=reply,
        )
        exchange = ExchangeRecord(
            conversation_id=conversation_id,
            account_number=payload.account_number,
            user_message=payload.message,
            assistant_message=reply,
            received_at=received_at,
            replied_at=datetime.now(UTC),
            player_id=payload.player_id,
            player_username=payload.player_username,
            country=payload.country,
            source_client=access.source_client,
        )
        return relayed, exchange

    async def schedule_persistence(self, exchange: ExchangeRecord) -> None:
        """Hand the exchange to the detached runner; returns without waiting for it."""
        self._runner.spawn(
            self.record_exchange(exchange),
            name=f"record-exchange-{exchange.conversation_id}",
        )

    async def record_exchange(self, exchange: ExchangeRecord) -> bool:
        labels = await self._classifier.classify(exchange.user_message)
        labels = labels.with_topic_fallback()
        try:
            await self._store.record_exchange(exchange, labels)
        except PersistenceError as exc:
            record_persistence("failed")
            logger.error(
                "exchange_persist_failed",
                extra={
                    "account_number": exchange.account_number,
                    "conversation_id": exchange.conversation_id,
                    "error": str(exc),
                },
            )
            return False
        record_persistence("stored")
        logger.info(
            "exchange_persisted",
            extra={
                "account_number": exchange.account_number,
                "conversation_id": exchange.conversation_id,
                "source_client": exchange.source_client,
            },
        )
        return True
