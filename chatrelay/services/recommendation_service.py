import logging

from fastapi import Request

from chatrelay.auth.gate import AuthorizationGate
from chatrelay.core.errors import AppError, PersistenceError
from chatrelay.models.chat import RecommendationRequest
from chatrelay.storage.recommendations import RecommendationStore

logger = logging.getLogger("relay.recommendations")


class RecommendationService:
    def __init__(self, gate: AuthorizationGate, store: RecommendationStore):
        self._gate = gate
        self._store = store

    async def handle(self, request: Request, payload: RecommendationRequest) -> dict[str, bool]:
        access = await self._gate.authorize(
            account_number=payload.account_number,
            api_key=request.headers.get("x-api-key"),
            source_client=payload.source_type,
            invalid_source_message="Invalid sourceType",
        )
        try:
            await self._store.add(
                account_number=payload.account_number,
                roblox_user_id=payload.roblox_user_id,
                ideas=payload.ideas,
                source_type=payload.source_type,
            )
        except PersistenceError as exc:
            logger.error(
                "recommendation_store_failed",
                extra={"account_number": payload.account_number, "error": str(exc)},
            )
            raise AppError(500, "Failed to store recommendation") from exc

        logger.info(
            "recommendation_stored",
            extra={
                "account_number": payload.account_number,
                "source_client": access.source_client,
            },
        )
        return {"ok": True}
