"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and sync component wiring,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.contact_sync.config import get_settings
from src.contact_sync.core.database import close_db, init_db
from src.contact_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.contact_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.contact_sync.api.v1 import health
from src.contact_sync.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and sync components; tear down on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Each component is wired in its own try/except so missing Wealthbox
    # credentials leave the listing endpoints usable; dependents answer 503.
    app.state.contact_store = None
    app.state.wealthbox_client = None
    app.state.sync_engine = None
    app.state.webhook_processor = None
    app.state.sync_scheduler = None

    try:
        from src.contact_sync.contacts.repository import ContactRepository
        from src.contact_sync.core.database import get_session

        app.state.contact_store = ContactRepository(session_factory=get_session)
        log.info("contacts.store_initialized")
    except Exception:
        log.warning("contacts.store_init_failed", exc_info=True)

    store = app.state.contact_store
    if store is not None:
        try:
            from src.contact_sync.contacts.client import WealthboxClient
            from src.contact_sync.contacts.engine import ReconciliationEngine
            from src.contact_sync.contacts.identity import IdentityResolver

            client = WealthboxClient.from_settings(settings)
            app.state.wealthbox_client = client
            app.state.sync_engine = ReconciliationEngine(
                client=client,
                resolver=IdentityResolver(store),
                store=store,
                concurrency=settings.SYNC_CONCURRENCY,
            )
            log.info("contacts.sync_engine_initialized", page_size=client.page_size)
        except Exception as exc:
            log.warning("contacts.sync_engine_init_failed", error=str(exc))

    engine = app.state.sync_engine
    if engine is not None:
        try:
            from src.contact_sync.contacts.webhooks import WebhookProcessor, WebhookVerifier

            verifier = WebhookVerifier(settings.WEALTHBOX_WEBHOOK_SECRET)
            app.state.webhook_processor = WebhookProcessor(verifier=verifier, engine=engine)
            log.info("contacts.webhooks_initialized")
        except Exception as exc:
            log.warning("contacts.webhooks_init_failed", error=str(exc))

        if settings.SYNC_SCHEDULE_ENABLED:
            try:
                from src.contact_sync.contacts.scheduler import SyncScheduler

                scheduler = SyncScheduler(engine=engine, cron=settings.SYNC_SCHEDULE_CRON)
                scheduler.start()
                app.state.sync_scheduler = scheduler
            except Exception:
                log.warning("contacts.scheduler_init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Wealthbox Contact Sync",
        version="0.1.0",
        description="Keeps a local user directory in step with Wealthbox CRM contacts",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
