from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from chatrelay.models.chat import ChatRequest, RecommendationRequest
from chatrelay.ratelimit.limiter import enforce_chat_rate_limit
from chatrelay.relay.events import SSE_HEADERS
from chatrelay.services.chat_service import ChatService
from chatrelay.services.recommendation_service import RecommendationService
from chatrelay.storage.database import check_connection

router = APIRouter()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    pool = request.app.state.db_pool
    if pool is None:
        return JSONResponse({"status": "ready", "database": "memory"})
    if await check_connection(pool):
        return JSONResponse({"status": "ready", "database": "connected"})
    return JSONResponse({"status": "degraded", "database": "disconnected"}, status_code=503)


@router.post("/v1/chat/stream", dependencies=[Depends(enforce_chat_rate_limit)])
async def chat_stream(request: Request, payload: ChatRequest) -> StreamingResponse:
    service: ChatService = request.app.state.chat_service
    relayed, exchange = await service.handle_chat(request, payload)
    # Persistence is scheduled only after the last event has been sent.
    return StreamingResponse(
        relayed.event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(service.schedule_persistence, exchange),
    )


@router.post("/v1/recommendations")
async def recommendations(request: Request, payload: RecommendationRequest) -> dict[str, bool]:
    service: RecommendationService = request.app.state.recommendation_service
    return await service.handle(request, payload)
