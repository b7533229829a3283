"""Main FastAPI application - Avito support CRM"""

import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse

from app.config import Settings, get_settings
from app.database import AsyncSessionLocal, close_db, init_db
from app.api import ai_assistant, bot, chats, dev, events, subscribe, webhook
from app import models  # noqa: F401
from app.services import assistant as assistant_service
from app.services import avito_client as avito_service
from app.services.assistant import AssistantResponder
from app.services.avito_client import build_avito_client
from app.services.background import BackgroundTaskSupervisor
from app.services.enrichment import ItemInfoCache
from app.services.realtime import RealtimeBus
from app.services.responder import ResponderDispatcher
from app.services.webhook_ingest import WebhookIngestor

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Initialize Sentry if DSN is provided
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        release="0.1.0",
        integrations=[
            FastApiIntegration(),
        ],
    )
    logging.info("Sentry initialized for environment: %s", settings.SENTRY_ENVIRONMENT)
else:
    logging.info("Sentry disabled (no DSN configured)")

# Prometheus metrics (kept minimal; avoid high-cardinality labels).
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

# Create FastAPI app
app = FastAPI(
    title="Avito CRM API",
    description="Webhook ingestion and realtime operator queue for Avito Messenger",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Dev-Token", "X-CRM-Bot-Token"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all for unhandled exceptions: log, report to Sentry, return a clean 500."""
    logger.exception("Unhandled exception: %s %s", request.method, request.url.path)
    if settings.SENTRY_DSN:
        import sentry_sdk
        sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


def init_services(app: FastAPI, app_settings: Settings = None, session_factory=None, client=None) -> None:
    """Build the process-wide services and put them on ``app.state``."""
    app_settings = app_settings or get_settings()
    session_factory = session_factory or AsyncSessionLocal

    bus = RealtimeBus(queue_size=app_settings.REALTIME_QUEUE_SIZE)
    bus.start()
    supervisor = BackgroundTaskSupervisor(max_concurrency=app_settings.BACKGROUND_MAX_CONCURRENCY)
    client = client or build_avito_client(app_settings, session_factory=session_factory)
    item_cache = ItemInfoCache(client, ttl_seconds=app_settings.ITEM_CACHE_TTL_SECONDS)
    assistant = AssistantResponder(
        base_url=app_settings.OPENAI_BASE_URL,
        default_model=app_settings.OPENAI_DEFAULT_MODEL,
        run_timeout=app_settings.OPENAI_RUN_TIMEOUT_SECONDS,
        session_factory=session_factory,
    )
    responder = ResponderDispatcher(
        client=client,
        bus=bus,
        assistant=assistant,
        session_factory=session_factory,
        settings=app_settings,
    )

    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.bus = bus
    app.state.supervisor = supervisor
    app.state.avito_client = client
    app.state.item_cache = item_cache
    app.state.assistant = assistant
    app.state.responder = responder
    app.state.ingestor = WebhookIngestor(
        bus=bus,
        supervisor=supervisor,
        client=client,
        item_cache=item_cache,
        responder=responder,
        settings=app_settings,
        session_factory=session_factory,
    )


async def shutdown_services(app: FastAPI) -> None:
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is not None:
        await supervisor.shutdown()
    bus = getattr(app.state, "bus", None)
    if bus is not None:
        bus.stop()
    client = getattr(app.state, "avito_client", None)
    if client is not None:
        await client.aclose()
    await avito_service.close_shared_client()
    await assistant_service.close_shared_client()


# Lifecycle events
@app.on_event("startup")
async def startup_event():
    """Initialize database and services on startup"""
    logger.info("Starting Avito CRM API (environment=%s, mock=%s)...", settings.ENVIRONMENT, settings.MOCK_MODE)
    logger.info("Database: %s", settings.DATABASE_URL.split("@")[-1])  # Hide credentials in logs

    if not settings.MOCK_MODE:
        missing = settings.missing_avito_credentials()
        if missing:
            logger.warning("MOCK_MODE is off but Avito credentials are missing: %s", ", ".join(missing))

    try:
        await init_db()
    except Exception as exc:
        logger.warning("create_all race condition (harmless if tables exist): %s", exc)

    init_services(app, settings)
    logger.info("Services initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down Avito CRM API...")
    await shutdown_services(app)
    await close_db()


@app.middleware("http")
async def prometheus_http_middleware(request, call_next):
    """
    Record request metrics with low-cardinality path templates.
    """
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500) or 500
        return response
    finally:
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        # Avoid scraping loops / noise; SSE streams are long-lived.
        if path not in {"/api/metrics", "/events"}:
            elapsed = time.perf_counter() - start
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method,
                path=path,
                status_code=str(status_code),
            ).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=request.method,
                path=path,
            ).observe(elapsed)


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint, verifies DB connectivity."""
    session_factory = getattr(app.state, "session_factory", AsyncSessionLocal)
    try:
        async with session_factory() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "service": "avito-crm", "version": "0.1.0"}
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": "avito-crm", "error": str(e)}
        )


@app.get("/api/health")
async def health_check_api():
    """Health check endpoint (API namespace, for reverse proxies)."""
    return await health_check()


@app.get("/api/metrics")
async def prometheus_metrics():
    """
    Prometheus scrape endpoint.

    Security: this is intended to be scraped locally (Prometheus runs on the same host).
    Do not expose publicly in nginx.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(webhook.router)
app.include_router(events.router)
app.include_router(chats.router, prefix="/api")
app.include_router(subscribe.router, prefix="/api")
app.include_router(bot.router, prefix="/api")
app.include_router(dev.router, prefix="/api")
app.include_router(ai_assistant.router, prefix="/api")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "service": "Avito CRM API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "mock_mode": settings.MOCK_MODE,
        "endpoints": {
            "webhook": "/webhook",
            "events": "/events",
            "chats": "/api/chats",
            "subscribe": "/api/avito/subscribe",
            "bot": "/api/bot/reply",
            "ai_assistant": "/api/ai-assistant",
            "ai_assistant_files": "/api/ai-assistant/files",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
