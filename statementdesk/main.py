"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from statementdesk.config import get_settings
from statementdesk.database import create_tables
from statementdesk.routers import (
    auth_router,
    token_health_router,
    connections_router,
    sync_router,
    mappings_router,
)
from statementdesk.services.errors import IntegrationError, RateLimited
from statementdesk.services.worker import sync_worker
from statementdesk.utils.logging import configure_logging

settings = get_settings()

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: create database tables, recover unfinished jobs, start the sync worker
    await create_tables()
    await sync_worker.recover()
    sync_worker.start()
    yield
    # Shutdown: stop taking jobs
    await sync_worker.stop()


app = FastAPI(
    title=settings.app_name,
    description="Bank statement export to Google Sheets, Xero and QuickBooks",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    """Render typed integration errors as stable codes."""
    logger.info(
        "integration_error",
        path=request.url.path,
        error_code=exc.code,
        provider=exc.provider,
    )
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
        headers=headers,
    )


# Include routers with /api/v1 prefix; token health must precede /auth/{provider}
app.include_router(auth_router, prefix="/api/v1")
app.include_router(token_health_router, prefix="/api/v1")
app.include_router(connections_router, prefix="/api/v1")
app.include_router(sync_router, prefix="/api/v1")
app.include_router(mappings_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
