"""
EcoTrace Validation API - Main FastAPI Application
Carbon emission validation and cross-source reconciliation service
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from ecotrace import __version__
from ecotrace.api.deps import build_http_client, build_services
from ecotrace.api.v1.api import api_router
from ecotrace.core.config import settings
from ecotrace.core.logging_config import configure_logging
from ecotrace.core.metrics import CONTENT_TYPE_LATEST, MetricsMiddleware, get_metrics
from ecotrace.core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph, load geographic data and start the refresh loop"""
    configure_logging()
    client = build_http_client()
    geo_service, orchestrator = build_services(client)
    app.state.geo_service = geo_service
    app.state.orchestrator = orchestrator

    stats = await geo_service.initialize()
    logger.info(
        f"{settings.APP_NAME} started with {stats.total_mappings} postal mappings "
        f"({settings.ENVIRONMENT})"
    )

    if settings.GEO_REFRESH_SCHEDULER_ENABLED:
        await geo_service.start_scheduler()

    try:
        yield
    finally:
        await geo_service.stop_scheduler()
        await client.aclose()
        logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="Carbon emission validation and cross-source reconciliation engine",
    version=__version__,
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

if settings.ENVIRONMENT in ["production", "staging"]:
    app.add_middleware(GZipMiddleware, minimum_size=1000)

if settings.PROMETHEUS_METRICS_ENABLED:
    app.add_middleware(MetricsMiddleware)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix="/v1")


@app.get("/health")
async def health_check():
    """Basic health check endpoint for load balancers and monitoring"""
    return {
        "status": "healthy",
        "service": "ecotrace-validation",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {
        "message": "EcoTrace Validation API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "ecotrace.main:app",
        host="0.0.0.0",  # nosec B104
        port=8000,
        reload=settings.ENVIRONMENT == "development",
    )
