"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.api import integrations, reports, settings as settings_api, sync, webhooks
from app.config import settings
from app.models.base import init_db
from app.scheduler import scheduler
from app.security import BasicAuthMiddleware
from app.services.errors import SyncError
from app.services.sync_engine import sync_engine

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Report Sync Service")
    init_db()
    recovered = sync_engine.worker.recover()
    if recovered:
        logger.info(f"Recovered {recovered} interrupted sync entries")
    if settings.sync_worker_enabled:
        scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping Report Sync Service")
    if settings.sync_worker_enabled:
        scheduler.stop()


app = FastAPI(
    title="Report Sync Service",
    description="Forward bug reports to GitHub / GitLab issues and keep their status in sync",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth (recommended if exposed beyond localhost/private networks)
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
        allow_paths={"/health"},
        allow_prefixes=("/api/webhooks/",),
    )


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    body = {"error": exc.code, "message": exc.message}
    if getattr(exc, "retry_queued", False):
        body["retryQueued"] = True
    return JSONResponse(status_code=exc.status_code, content=body)


# Include API routers
app.include_router(integrations.router)
app.include_router(reports.router)
app.include_router(webhooks.router)
app.include_router(settings_api.router)
app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Report Sync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
