#!/usr/bin/env python3
"""
Caseflow API
============

FastAPI application exposing the case lifecycle engine: cases, transitions,
stage deletion and recreation, progress and analytics.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ...core.cases.workflow import get_workflow_engine
from ...core.config import get_config
from ..shared.middleware import TraceMiddleware, register_error_handlers
from ..shared.routers.health import router as health_router
from .routers import analytics_router, cases_router, stages_router

logger = logging.getLogger(__name__)


# =============================================================================
# OBSERVABILITY INITIALIZATION
# =============================================================================

def init_observability():
    """Initialize observability components (tracing, metrics, logging)."""
    from ...core.observability import configure_logging, init_metrics, init_tracing

    config = get_config()

    # Configure structured logging first
    configure_logging(
        level=config.log_level,
        structured=config.log_structured,
        service_name=config.service_name,
    )

    if config.otlp_endpoint or config.otel_console:
        init_tracing(
            service_name=config.service_name,
            service_version=config.service_version,
            otlp_endpoint=config.otlp_endpoint,
            console_export=config.otel_console,
        )
        init_metrics(
            service_name=config.service_name,
            otlp_endpoint=config.otlp_endpoint,
            console_export=config.otel_console,
        )
        logger.info("OpenTelemetry observability initialized")


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    init_observability()

    config = get_config()
    for issue in config.validate():
        logger.warning(issue)

    engine = get_workflow_engine()
    logger.info(f"Case store ready at {engine.store.db_path}")

    yield


# =============================================================================
# FASTAPI APP
# =============================================================================

app = FastAPI(
    title="Caseflow API",
    description="Case lifecycle workflow engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(TraceMiddleware)

register_error_handlers(app)

app.include_router(health_router)
app.include_router(cases_router)
app.include_router(stages_router)
app.include_router(analytics_router)


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "caseflow.api.cases.main:app",
        host=config.api_host,
        port=config.api_port,
        reload=True,
    )
