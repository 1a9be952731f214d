"""Entry point for the FastAPI-powered recommendation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import Database
from .exceptions import CacheWriteError, DataError
from .services.cache import RecommendationCache
from .services.fallback import FallbackGenerator
from .services.library import LibraryRepository
from .services.openai import OpenAIClient
from .services.preferences import PreferenceAnalyzer
from .services.recommendations import RecommendationService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"

app: FastAPI


def build_recommendation_service(
    database: Database, http_client: httpx.AsyncClient
) -> RecommendationService:
    """Wire the recommendation engine around a database and HTTP client."""

    library = LibraryRepository(database.session_factory)
    return RecommendationService(
        library,
        PreferenceAnalyzer(library, recent_review_window=settings.recent_review_window),
        FallbackGenerator(library),
        OpenAIClient(settings, http_client),
        RecommendationCache(
            database.session_factory,
            ttl_seconds=settings.recommendation_cache_seconds,
        ),
        prompt_book_limit=settings.prompt_book_limit,
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    openai_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openai_api_url),
            timeout=httpx.Timeout(settings.openai_timeout_seconds, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    service = build_recommendation_service(database, openai_http_client)
    if not settings.ai_enabled:
        logger.warning(
            "OpenAI API key not configured. Recommendations will use the fallback system."
        )

    fastapi_app.state.recommendation_service = service
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Personalised book recommendations with an AI-first, algorithmic fallback engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_recommendation_service(app: FastAPI) -> RecommendationService:
    service = getattr(app.state, "recommendation_service", None)
    if not isinstance(service, RecommendationService):
        raise RuntimeError("Recommendation service not initialised")
    return service


def _require_user(request: Request) -> str:
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return user_id


def register_routes(fastapi_app: FastAPI) -> None:
    prefix = "/api/v1/recommendations"

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get(prefix)
    async def recommendations(request: Request) -> JSONResponse:
        user_id = _require_user(request)
        service = get_recommendation_service(fastapi_app)
        try:
            result = await service.generate(user_id)
        except DataError as exc:
            raise HTTPException(
                status_code=503,
                detail="Unable to generate recommendations at this time. Please try again later.",
            ) from exc
        return JSONResponse(result.model_dump(mode="json"))

    @fastapi_app.delete(f"{prefix}/cache")
    async def invalidate_cache(request: Request) -> dict[str, str]:
        user_id = _require_user(request)
        service = get_recommendation_service(fastapi_app)
        try:
            await service.invalidate(user_id)
        except CacheWriteError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "invalidated"}

    @fastapi_app.get(f"{prefix}/health")
    async def recommendation_health() -> JSONResponse:
        service = get_recommendation_service(fastapi_app)
        status = await service.test_system()
        stats = await service.get_cache_stats()
        payload: dict[str, Any] = {
            "status": "healthy" if status.healthy else "degraded",
            "services": status.to_payload(),
            "cache": {"size": stats.size},
            "timestamp": datetime.utcnow().isoformat(),
        }
        return JSONResponse(payload, status_code=200 if status.healthy else 503)

    @fastapi_app.get(f"{prefix}/cache/stats")
    async def cache_stats() -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        stats = await service.get_cache_stats()
        return {"cache": stats.to_payload(), "timestamp": datetime.utcnow().isoformat()}

    @fastapi_app.delete(f"{prefix}/cache/all")
    async def clear_cache() -> dict[str, str]:
        service = get_recommendation_service(fastapi_app)
        try:
            await service.invalidate_all()
        except CacheWriteError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "cleared"}

    @fastapi_app.get(f"{prefix}/history")
    async def history(
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
        skip: int = Query(default=0, ge=0),
    ) -> dict[str, Any]:
        user_id = _require_user(request)
        service = get_recommendation_service(fastapi_app)
        entries = await service.get_history(user_id, limit=limit, skip=skip)
        return {"userId": user_id, "history": entries}

    @fastapi_app.get(f"{prefix}/analytics")
    async def analytics(
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        service = get_recommendation_service(fastapi_app)
        summary = await service.get_analytics(start=start, end=end)
        return {"sources": summary}


app = create_app()
