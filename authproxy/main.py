import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authproxy.api.health import router as health_router
from authproxy.api.logs import router as logs_router
from authproxy.api.metrics import router as metrics_router
from authproxy.config import Settings, get_settings, log_environment_status
from authproxy.core.auth import TokenValidator
from authproxy.core.middleware import AuthMiddleware, RequestLoggingMiddleware
from authproxy.services.elasticsearch import ElasticsearchClient
from authproxy.services.ingestion_service import IngestionService

logger = logging.getLogger("authproxy.main")

PROTECTED_PATHS = ("/logs",)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    ingestion_service: Optional[IngestionService] = None,
    validator: Optional[TokenValidator] = None,
) -> FastAPI:
    """Assemble the proxy. Every collaborator is owned by the returned app."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    validator = validator or TokenValidator.from_settings(settings)

    es_client: Optional[ElasticsearchClient] = None
    if ingestion_service is None:
        es_client = ElasticsearchClient.from_settings(settings)
        ingestion_service = IngestionService.from_settings(settings, es_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Initializing auth proxy components...")
        log_environment_status()
        await ingestion_service.start()
        logger.info(
            f"Forwarding to {settings.elasticsearch_url} "
            f"(batch_size={settings.batch_size}, flush_interval={settings.flush_interval}s)"
        )

        yield

        logger.info("Shutting down: flushing pending logs...")
        try:
            await ingestion_service.stop()
        finally:
            if es_client is not None:
                await es_client.close()

    app = FastAPI(
        title=settings.app_name,
        description="Authenticating proxy that batches tenant log submissions into Elasticsearch.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ingestion_service = ingestion_service

    app.add_middleware(
        AuthMiddleware, validator=validator, protected_paths=PROTECTED_PATHS
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(logs_router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "-")
        logger.error(
            f"[{request_id}] Unhandled Server Error routing request '{request.method} {request.url.path}': {exc!r}"
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        "authproxy.main:create_app",
        factory=True,
        host=_settings.host,
        port=_settings.port,
    )
