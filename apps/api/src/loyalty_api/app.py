from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from .api.routes import api_router
from .core.logging import configure_logging
from .core.settings import Settings, get_settings
from .db.session import build_engine, build_session_factory
from .observability.loyalty import LoyaltyObservabilityStore
from .observability.tracing import configure_tracing
from .services.loyalty import LoyaltyPolicy


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Loyalty API starting",
        environment=app.state.settings.environment,
        tiers={tier.value: threshold for tier, threshold in app.state.loyalty_policy.tiers.thresholds},
    )
    try:
        yield
    finally:
        await app.state.engine.dispose()
        logger.info("Loyalty API stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory for the loyalty FastAPI service.

    The engine, session factory, policy and telemetry store are built here
    and kept on ``app.state``; nothing is cached at module level.
    """

    settings = settings or get_settings()
    configure_logging(
        service_name="loyalty-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    engine = build_engine(settings.database_url, echo=settings.database_echo)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.loyalty_policy = LoyaltyPolicy.from_settings(settings)
    app.state.loyalty_telemetry = LoyaltyObservabilityStore()

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name="loyalty-api",
            service_version=APP_VERSION,
            environment=settings.environment,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
