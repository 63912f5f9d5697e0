"""FastAPI application for the AI router"""

import time
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from airouter import __version__
from airouter.api.schemas import (
    CompleteSessionRequest,
    CompleteSessionResponse,
    DocumentResponse,
    HealthResponse,
    InitialContextRequest,
    IterativeContextRequest,
    OrgConfigRequest,
    OrgConfigResponse,
    ProcessUpdatesResponse,
    QueueUpdateRequest,
    QueueUpdateResponse,
    UpsertDocumentRequest,
)
from airouter.config import settings
from airouter.core.exceptions import (
    AIRouterError,
    BudgetExceededError,
    ModelUnavailableError,
    SessionClosedError,
    SessionNotFoundError,
    UnknownModelTierError,
)
from airouter.core.models.memory import (
    HierarchyPosition,
    IterativeResponse,
    MemoryAnalytics,
    RetrievalResult,
)
from airouter.core.models.routing import AIRequest, AIResponse, ClassificationPreview, ModelInfo
from airouter.services.llm import close_llm_client
from airouter.services.memory import MemoryService, get_memory_service
from airouter.services.metrics import (
    MetricsCollector,
    api_active_requests,
    get_content_type,
    get_metrics,
    system_info,
)
from airouter.services.org_settings import OrgSettingsService
from airouter.services.router import AIRouter, get_ai_router
from airouter.storage.database import close_db, get_session, init_db
from airouter.storage.redis_client import close_redis_pool
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

app_start_time: float = time.time()

ERROR_STATUS_CODES: dict[type[AIRouterError], int] = {
    BudgetExceededError: status.HTTP_402_PAYMENT_REQUIRED,
    ModelUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UnknownModelTierError: status.HTTP_400_BAD_REQUEST,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionClosedError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    logger.info("Initializing AI router services...")

    await init_db()
    logger.info("Database initialized")

    expired = await get_memory_service().expire_stale_sessions()
    if expired:
        logger.info(f"Expired {expired} stale retrieval sessions")

    system_info.info({"version": __version__, "environment": settings.environment})
    logger.info(
        f"Models: code={settings.code_model_tier}, prose={settings.prose_model_tier}, "
        f"classifier={settings.classifier_model_tier} "
        f"(default mode: {settings.default_classification_mode})"
    )
    yield

    logger.info("Shutting down AI router services...")
    await close_llm_client()
    if settings.cache_enabled:
        await close_redis_pool()
    await close_db()
    logger.info("Connections closed")


# Create FastAPI app
app = FastAPI(
    title="AI Router API",
    description="Model routing, budget enforcement and hierarchical memory context for AI requests",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Middleware
# ============================================================================


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track API request metrics"""

    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics" or not settings.enable_metrics:
            return await call_next(request)

        start_time = time.time()
        api_active_requests.labels(method=request.method, endpoint=request.url.path).inc()

        try:
            response = await call_next(request)
            MetricsCollector.record_api_request(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code,
                duration=time.time() - start_time,
            )
            return response
        finally:
            api_active_requests.labels(method=request.method, endpoint=request.url.path).dec()


app.add_middleware(MetricsMiddleware)


@app.exception_handler(AIRouterError)
async def router_error_handler(request: Request, exc: AIRouterError) -> JSONResponse:
    """Map orchestration errors to HTTP status codes"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[error_type]
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


# ============================================================================
# Dependencies
# ============================================================================


def get_router() -> AIRouter:
    return get_ai_router()


def get_memory() -> MemoryService:
    return get_memory_service()


def get_org_settings() -> OrgSettingsService:
    return OrgSettingsService()


# ============================================================================
# Health & Metrics Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Check system health"""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database_status = "unavailable"

    services_status = {
        "database": database_status,
        "response_cache": "enabled" if settings.cache_enabled else "disabled",
    }

    return HealthResponse(
        status="healthy" if database_status == "healthy" else "degraded",
        version=__version__,
        services=services_status,
    )


@app.get("/metrics", tags=["System"])
async def prometheus_metrics():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=get_content_type())


# ============================================================================
# AI Endpoints
# ============================================================================


@app.post("/api/v1/ai", response_model=AIResponse, tags=["AI"])
async def route_request(request: AIRequest, router: AIRouter = Depends(get_router)):
    """Classify, budget-check and answer a request"""
    return await router.route(request)


@app.get("/api/v1/ai/preview", response_model=ClassificationPreview, tags=["AI"])
async def preview_request(prompt: str, org_id: str, router: AIRouter = Depends(get_router)):
    """Preview the model choice and estimated cost without calling a model"""
    if not prompt.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prompt is empty")
    return await router.preview_classification(prompt, org_id)


@app.get("/api/v1/ai/models", response_model=list[ModelInfo], tags=["AI"])
async def list_models():
    """Registered model tiers"""
    return AIRouter.available_models()


# ============================================================================
# Memory Endpoints
# ============================================================================


@app.post("/api/v1/memory/context", response_model=RetrievalResult, tags=["Memory"])
async def get_initial_context(
    request: InitialContextRequest, memory: MemoryService = Depends(get_memory)
):
    """Open a retrieval session with the best-matching chunks"""
    position = HierarchyPosition(
        org_id=request.org_id,
        user_id=request.user_id,
        domain_id=request.domain_id,
        project_id=request.project_id,
        circle_id=request.circle_id,
    )
    return await memory.get_initial_context(
        position, request.session_type, request.keywords, request.max_tokens
    )


@app.post(
    "/api/v1/memory/context/{session_id}", response_model=IterativeResponse, tags=["Memory"]
)
async def request_more_context(
    session_id: UUID,
    request: IterativeContextRequest,
    memory: MemoryService = Depends(get_memory),
):
    """Serve more context within an open retrieval session"""
    return await memory.handle_iterative_request(
        session_id,
        request.ai_request_text,
        request.request_type,
        keywords=request.keywords,
        max_tokens=request.max_tokens,
    )


@app.post(
    "/api/v1/memory/context/{session_id}/complete",
    response_model=CompleteSessionResponse,
    tags=["Memory"],
)
async def complete_session(
    session_id: UUID,
    request: CompleteSessionRequest,
    memory: MemoryService = Depends(get_memory),
):
    """Record whether a session's context was sufficient"""
    completed = await memory.complete_session(session_id, request.was_successful, request.notes)
    return CompleteSessionResponse(session_id=session_id, completed=completed)


@app.post(
    "/api/v1/memory/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Memory"],
)
async def upsert_document(
    request: UpsertDocumentRequest, memory: MemoryService = Depends(get_memory)
):
    """Create or replace a memory document"""
    try:
        await memory.upsert_document(
            org_id=request.org_id,
            level=request.level,
            level_entity_id=request.level_entity_id,
            title=request.title,
            content=request.content,
            updated_by=request.updated_by,
            edit_reason=request.edit_reason,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    document = await memory.get_document(request.org_id, request.level, request.level_entity_id)
    return DocumentResponse(
        id=document.id,
        document_key=document.document_key,
        version=document.version,
        chunk_count=document.chunk_count,
    )


@app.post(
    "/api/v1/memory/updates",
    response_model=QueueUpdateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Memory"],
)
async def queue_update(request: QueueUpdateRequest, memory: MemoryService = Depends(get_memory)):
    """Queue a document change from a domain event"""
    try:
        update_id = await memory.queue_memory_update(
            org_id=request.org_id,
            source_type=request.source_type,
            source_entity_id=request.source_entity_id,
            target_level=request.target_level,
            update_type=request.update_type,
            content=request.content,
            section_id=request.section_id,
            keywords=request.keywords,
            target_entity_id=request.target_entity_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return QueueUpdateResponse(id=update_id)


@app.post(
    "/api/v1/memory/updates/process", response_model=ProcessUpdatesResponse, tags=["Memory"]
)
async def process_updates(limit: int | None = None, memory: MemoryService = Depends(get_memory)):
    """Apply pending queued updates"""
    counts = await memory.process_pending_updates(limit)
    return ProcessUpdatesResponse(**counts)


@app.get("/api/v1/memory/analytics", response_model=MemoryAnalytics, tags=["Memory"])
async def memory_analytics(
    org_id: str,
    days: int = Query(default=30, ge=1, le=365),
    memory: MemoryService = Depends(get_memory),
):
    """Session success, token savings and missing-information patterns"""
    return await memory.get_analytics(org_id, days)


# ============================================================================
# Organization Configuration Endpoints
# ============================================================================


@app.get("/api/v1/orgs/{org_id}/ai-config", response_model=OrgConfigResponse, tags=["Orgs"])
async def get_org_config(
    org_id: str, org_settings: OrgSettingsService = Depends(get_org_settings)
):
    """Classification mode, limits and month-to-date usage of an organization"""
    config = await org_settings.get_config(org_id)
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"No AI config for org {org_id}"
        )
    return config


@app.put("/api/v1/orgs/{org_id}/ai-config", response_model=OrgConfigResponse, tags=["Orgs"])
async def update_org_config(
    org_id: str,
    request: OrgConfigRequest,
    org_settings: OrgSettingsService = Depends(get_org_settings),
):
    """Create or update an organization's classification mode and limits"""
    return await org_settings.configure(
        org_id,
        classification_mode=request.classification_mode,
        monthly_budget_usd=request.monthly_budget_usd,
        daily_request_limit=request.daily_request_limit,
    )


# ============================================================================
# Root Endpoint
# ============================================================================


@app.get("/", tags=["System"])
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "prometheus_metrics": "/metrics",
        "uptime_seconds": round(time.time() - app_start_time, 1),
    }
