# backend/consultflow/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Response
from fastapi.routing import APIRoute

from .core.config import settings
from .core.crypto import validate_token_encryption_key
from .errors import register_error_handlers
from .init_db import init_db
from .monitoring.prometheus_metrics import prometheus_metrics
from .monitoring.sentry import init_sentry
from .routes.v1 import bookings as bookings_v1, cron as cron_v1, payments as payments_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "Consultflow API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"Starting {API_TITLE} ({settings.environment})")
    init_sentry(settings.sentry_dsn)
    if settings.environment == "production":
        validate_token_encryption_key(settings.calendar_token_encryption_key)
    init_db()
    yield
    logger.info(f"{API_TITLE} shutting down")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
        generate_unique_id_function=_unique_operation_id,
    )
    register_error_handlers(app)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    api_v1.include_router(cron_v1.router, prefix="/cron")
    app.include_router(api_v1)

    @app.get("/health", include_in_schema=False)
    def health_check() -> Dict[str, str]:
        return {"status": "healthy", "service": "consultflow", "environment": settings.environment}

    # Prometheus scrape endpoint (public, standard path)
    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(content=prometheus_metrics.get_metrics(), media_type=prometheus_metrics.get_content_type())

    return app


app = create_app()
