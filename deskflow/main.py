"""Main FastAPI application - deskflow automation API"""

import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse

from deskflow.config import get_settings
from deskflow.database import engine, Base, AsyncSessionLocal
from deskflow.api import automations, automation_logs
from deskflow import models  # noqa: F401
from deskflow.services.automation_rules import RuleCache
from deskflow.services.automation_triggers import AutomationDispatcher, TicketLockRegistry
from deskflow.services.survey_dispatcher import CelerySurveyDispatcher
from deskflow.services.webhook_client import WebhookClient

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
    title="deskflow Automation API",
    description="Declarative automation rules for customer-service tickets",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def _build_survey_dispatcher():
    if not settings.CELERY_BROKER_URL:
        logger.info("Survey dispatch disabled (no CELERY_BROKER_URL configured)")
        return None
    from deskflow.tasks import celery_app

    return CelerySurveyDispatcher(celery_app, settings.AUTOMATION_SURVEY_TASK)


# Application-owned automation resources. Created here rather than on startup
# so in-process test clients (which skip lifespan events) see them too.
app.state.rule_cache = RuleCache()
app.state.webhook_client = WebhookClient(
    default_timeout_ms=settings.AUTOMATION_WEBHOOK_TIMEOUT_MS,
    user_agent=settings.AUTOMATION_WEBHOOK_USER_AGENT,
)
app.state.survey_dispatcher = _build_survey_dispatcher()
app.state.ticket_locks = TicketLockRegistry()
app.state.automation_dispatcher = AutomationDispatcher(
    AsyncSessionLocal,
    rule_cache=app.state.rule_cache,
    webhook_client=app.state.webhook_client,
    survey_dispatcher=app.state.survey_dispatcher,
    settings=settings,
    locks=app.state.ticket_locks,
)


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all for unhandled exceptions, answered with a clean 500."""
    logger.exception("Unhandled exception: %s %s", request.method, request.url)
    if settings.SENTRY_DSN:
        import sentry_sdk
        sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# Lifecycle events
@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("Starting deskflow Automation API...")
    logger.info("Database: %s", settings.DATABASE_URL.split('@')[-1])  # Hide credentials in logs

    # Create tables (for development - use Alembic migrations in production)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.warning("create_all race condition (harmless if tables exist): %s", exc)

    logger.info("Database initialized successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down deskflow Automation API...")
    await app.state.webhook_client.aclose()
    await engine.dispose()


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
        path = getattr(route, "path", request.url.path) or request.url.path
        # Avoid scraping loops / noise.
        if path not in {"/api/metrics", "/metrics"}:
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
    """Health check endpoint (verifies DB connectivity)."""
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "service": "deskflow-automation", "version": "0.1.0"}
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": "deskflow-automation", "error": str(e)}
        )


@app.get("/api/health")
async def health_check_api():
    """Health check endpoint (API namespace, for reverse proxies)."""
    return await health_check()


@app.get("/api/metrics")
async def prometheus_metrics():
    """
    Prometheus scrape endpoint.

    Intended to be scraped from inside the deployment network; do not expose publicly.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(automations.router, prefix="/api")
app.include_router(automation_logs.router, prefix="/api")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "service": "deskflow Automation API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "automations": "/api/automations",
            "automation_logs": "/api/automation-logs",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "deskflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
