"""FastAPI application entry point for the orchestrator backend.

This module initializes the FastAPI application with all middleware,
routers, and lifespan handlers configured.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_orchestrator as set_routes_orchestrator
from api.websocket import set_orchestrator as set_websocket_orchestrator
from api.websocket import websocket_router
from config import configure_logging, settings
from orchestrator import build_orchestrator

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the queue, tracker and stream pipeline on startup; cancels every
    poller and stream and closes HTTP clients on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        resource_classes=sorted(settings.resource_class_concurrency),
    )

    orchestrator = build_orchestrator()

    set_routes_orchestrator(orchestrator)
    set_websocket_orchestrator(orchestrator)
    app.state.orchestrator = orchestrator

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.orchestrator.aclose()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Generation Job Orchestrator",
    description="Admission control, task status polling and agent stream "
    "dispatch for a visual canvas of generation nodes.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["orchestrator"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Generation Job Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
