from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from expertpay_api.core.settings import settings
from expertpay_api.db.session import engine, init_models
from .api.routes import api_router
from .core.logging import configure_logging


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        await init_models()
        logger.info("Database tables ensured", database_url=engine.url.render_as_string(hide_password=True))
    else:
        logger.info("Skipping table creation", reason="auto_create_tables is false")

    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Database engine disposed")


def create_app() -> FastAPI:
    """Application factory for the ExpertPay FastAPI service."""
    configure_logging(
        service_name="expertpay-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="ExpertPay API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
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
