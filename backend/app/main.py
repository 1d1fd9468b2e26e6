"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── API routers ──
from backend.app.api.deps import AppContext
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.contacts import router as contact_router
from backend.app.api.v1.push import router as push_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the app context on startup (unless one was injected), close it on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    owned = getattr(app.state, "context", None) is None
    if owned:
        if settings.STORE_BACKEND == "sql":
            from backend.app.core.database import init_db
            await init_db()
        app.state.context = AppContext.create()
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    if owned:
        await app.state.context.close()
        app.state.context = None
        if settings.STORE_BACKEND == "sql":
            from backend.app.core.database import close_db
            await close_db()


# ── Create application ──

def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Application factory. Pass ``context`` to run against pre-built services."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Panic button alert service. "
            "Raises emergency alerts to verified contacts, tracks "
            "acknowledgments, relays live locations of the sender and "
            "accepted responders, and keeps every viewer's accepted set "
            "converged through realtime events with a polling fallback."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.context = context

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(contact_router)
    app.include_router(push_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "alert-lifecycle",
                "supersession-rate-limit",
                "notification-fanout",
                "event-channels",
                "acceptance-convergence",
                "location-relay",
                "contacts-invites",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        ctx: AppContext = app.state.context
        report = await run_health_check(ctx.backend, ctx.transport, ctx.channels)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        ctx: AppContext = app.state.context
        report = await run_health_check(ctx.backend, ctx.transport, ctx.channels)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
