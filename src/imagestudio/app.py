"""FastAPI application factory."""

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware

from imagestudio.api.routes import analytics, studio
from imagestudio.core.config import Settings, configure_logging
from imagestudio.services.analytics import ExecutionCounter, MemoryKeyValueStore
from imagestudio.services.generation.executor import GenerationExecutor
from imagestudio.services.generation.gemini_client import GeminiImageClient
from imagestudio.services.reference_uploads import (
    ReferenceImageTracker,
    ReferenceUploadCoordinator,
)
from imagestudio.services.storage.backends import BlobBackend, create_blob_backends
from imagestudio.services.storage.client import BlobStoreClient
from imagestudio.services.storage.view_resolver import SignedViewResolver
from imagestudio.workers.generation_orchestrator import GenerationOrchestrator
from imagestudio.workers.sessions import SessionRegistry

logger = structlog.get_logger()


def init_app_state(
    app: FastAPI,
    settings: Settings,
    blob_backend: BlobBackend | None = None,
    analytics_backend: BlobBackend | None = None,
    gemini_transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Wire shared components and store them in app.state for access in routes."""
    if blob_backend is None or analytics_backend is None:
        default_blob, default_analytics = create_blob_backends(settings)
        blob_backend = blob_backend or default_blob
        analytics_backend = analytics_backend or default_analytics

    blob_client = BlobStoreClient(blob_backend)
    gemini = GeminiImageClient(
        base_url=settings.gemini_api_base_url,
        model=settings.gemini_model,
        timeout=settings.generation_timeout_seconds,
        transport=gemini_transport,
    )
    executor = GenerationExecutor(gemini, blob_client, settings)
    coordinator = ReferenceUploadCoordinator(blob_client, settings)

    app.state.settings = settings
    app.state.blob_client = blob_client
    app.state.view_resolver = SignedViewResolver(
        blob_client,
        max_preview_bytes=settings.preview_max_bytes,
        cache_ttl_seconds=settings.view_cache_ttl_seconds,
    )
    app.state.sessions = SessionRegistry(
        orchestrator_factory=lambda: GenerationOrchestrator(executor, settings),
        tracker_factory=lambda: ReferenceImageTracker(coordinator),
        idle_ttl_seconds=settings.session_idle_ttl_seconds,
        max_sessions=settings.max_sessions,
    )
    app.state.execution_counter = ExecutionCounter(
        MemoryKeyValueStore(),
        BlobStoreClient(analytics_backend),
        ttl_seconds=settings.analytics_ttl_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, wire storage, generation and session components
    - Shutdown: cancel every in-flight generation and reference upload
    """
    settings: Settings = app.state.settings
    configure_logging(settings)
    init_app_state(app, settings)

    logger.info(
        "application.startup",
        app_env=settings.app_env,
        blob_backend=settings.blob_backend,
        model=settings.gemini_model,
    )

    yield

    logger.info("application.shutdown")
    await app.state.sessions.shutdown_all()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Image Studio API",
        description="Batch image generation with reference uploads and object storage",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(studio.router)
    app.include_router(analytics.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with object store connectivity test.

        Returns:
            200: {"status": "healthy"} if a one-object listing succeeds
            503: {"status": "unhealthy", "error": ...} otherwise
        """
        listed = await app.state.blob_client.list_objects(limit=1)
        if listed.success:
            logger.debug("health_check.success")
            return {"status": "healthy"}

        logger.error("health_check.failed", error=listed.error)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "error": listed.error}

    return app


# Create app instance for uvicorn
app = create_app()
