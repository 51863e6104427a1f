import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from psycopg_pool import AsyncConnectionPool
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatrelay.api.routes import router
from chatrelay.auth.gate import AuthorizationGate
from chatrelay.background.runner import DetachedTaskRunner
from chatrelay.config.settings import Settings, get_settings
from chatrelay.core.errors import AppError, app_error_response, request_id_from_request
from chatrelay.core.logging import configure_logging
from chatrelay.enrichment.classifier import MessageClassifier
from chatrelay.metrics import metrics_router
from chatrelay.middleware.request_context import RequestContextMiddleware
from chatrelay.providers.base import GenerationProvider
from chatrelay.providers.gemini import GeminiProvider
from chatrelay.providers.http_openai import HTTPOpenAIProvider
from chatrelay.providers.stub import StubProvider
from chatrelay.ratelimit.limiter import SlidingWindowLimiter
from chatrelay.services.chat_service import ChatService
from chatrelay.services.recommendation_service import RecommendationService
from chatrelay.storage.conversations import (
    ConversationStore,
    InMemoryConversationStore,
    PostgresConversationStore,
)
from chatrelay.storage.database import create_pool, ensure_schema
from chatrelay.storage.recommendations import (
    InMemoryRecommendationStore,
    PostgresRecommendationStore,
    RecommendationStore,
)
from chatrelay.tenants.directory import (
    InMemoryTenantDirectory,
    PostgresTenantDirectory,
    TenantDirectory,
)

logger = logging.getLogger("relay.app")


def _build_provider(settings: Settings, timeout_s: float) -> GenerationProvider:
    provider_name = settings.provider_name_normalized
    if provider_name == "stub":
        return StubProvider()
    if provider_name == "gemini":
        if not settings.gemini_api_key:
            raise RuntimeError("RELAY_GEMINI_API_KEY is required when provider_name=gemini")
        return GeminiProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_s=timeout_s,
        )
    if provider_name in {"openai_compatible", "openai"}:
        if not settings.openai_base_url or not settings.openai_api_key:
            raise RuntimeError(
                "RELAY_OPENAI_BASE_URL and RELAY_OPENAI_API_KEY are required "
                "when provider_name=openai_compatible"
            )
        return HTTPOpenAIProvider(
            base_url=settings.openai_base_url,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_s=timeout_s,
        )
    raise RuntimeError(f"Unsupported RELAY_PROVIDER_NAME value: {provider_name}")


def _build_storage(
    settings: Settings,
) -> tuple[TenantDirectory, ConversationStore, RecommendationStore, AsyncConnectionPool | None]:
    backend = settings.storage_backend_normalized
    if backend == "memory":
        return (
            InMemoryTenantDirectory.from_records(settings.tenant_seed_records),
            InMemoryConversationStore(),
            InMemoryRecommendationStore(),
            None,
        )
    if backend == "postgres":
        pool = create_pool(settings)
        return (
            PostgresTenantDirectory(pool),
            PostgresConversationStore(pool, settings.message_encryption_key),
            PostgresRecommendationStore(pool),
            pool,
        )
    raise RuntimeError(f"Unsupported RELAY_STORAGE_BACKEND value: {backend}")


def create_app(
    settings: Settings | None = None,
    *,
    generation_provider: GenerationProvider | None = None,
    classifier_provider: GenerationProvider | None = None,
    tenant_directory: TenantDirectory | None = None,
    conversation_store: ConversationStore | None = None,
    recommendation_store: RecommendationStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    default_directory, default_store, default_recommendations, pool = _build_storage(settings)
    directory = tenant_directory or default_directory
    store = conversation_store or default_store
    runner = DetachedTaskRunner()
    gate = AuthorizationGate(directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if pool is not None:
            await pool.open()
            if settings.ensure_schema_on_startup:
                await ensure_schema(pool)
        try:
            yield
        finally:
            await runner.drain(timeout_s=settings.background_drain_timeout_s)
            if pool is not None:
                await pool.close()

    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)

    app.state.db_pool = pool
    app.state.runner = runner
    app.state.conversation_store = store
    app.state.chat_rate_limiter = (
        SlidingWindowLimiter(settings.chat_rate_limit_max, settings.chat_rate_limit_window_s)
        if settings.chat_rate_limit_max > 0
        else None
    )
    app.state.chat_service = ChatService(
        gate=gate,
        generator=generation_provider
        or _build_provider(settings, settings.generation_timeout_s),
        classifier=MessageClassifier(
            classifier_provider or _build_provider(settings, settings.classifier_timeout_s)
        ),
        store=store,
        runner=runner,
    )
    app.state.recommendation_service = RecommendationService(
        gate=gate,
        store=recommendation_store or default_recommendations,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(exc.status_code, exc.message, request_id, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        request_id = request_id_from_request(request)
        response = app_error_response(exc.status_code, str(exc.detail), request_id)
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            400, "Validation failed", request_id, _validation_details(exc.errors())
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        logger.error(
            "unhandled_error",
            extra={"request_id": request_id, "error": f"{type(exc).__name__}: {exc}"},
            exc_info=exc,
        )
        return app_error_response(500, "Internal Server Error", request_id)

    app.include_router(router)
    if settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


def _validation_details(errors: Any) -> list[dict[str, Any]]:
    return [
        {
            "path": [part for part in error.get("loc", ()) if part != "body"],
            "message": str(error.get("msg", "")),
            "code": str(error.get("type", "")),
        }
        for error in errors
    ]


app = create_app()
