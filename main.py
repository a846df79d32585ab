#!/usr/bin/env python3
"""
template-build-service: FastAPI service that turns uploaded game project
templates into playable WebGL builds and Android packages.
"""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.api.builds import get_base_url, router as builds_router
from app.api.files import router as files_router
from app.api.metrics import router as metrics_router
from app.api.templates import router as templates_router
from app.core.jobs import job_store
from app.core.logging import setup_logging
from app.core.orchestrator import build_orchestrator
from app.core.request_logging import RequestLoggingMiddleware
from app.db.database import init_db
from app.llm.config import get_draft_config

# Setup structured JSON logging
setup_logging(os.environ.get("LOG_LEVEL", "INFO"))

# Initialize database on startup
init_db()

# Jobs from a previous process can never finish
job_store.run_startup_cleanup()

# =============================================================================
# Configuration from environment
# =============================================================================
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await build_orchestrator.shutdown()


# Create app
app = FastAPI(
    title="template-build-service",
    description="Template builds with background job execution",
    version=VERSION,
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(templates_router)
app.include_router(builds_router)
app.include_router(files_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/meta")
def meta(request: Request):
    """
    Service metadata endpoint.

    Returns configuration info useful for diagnostics and client setup.
    """
    settings = build_orchestrator.settings
    draft_config = get_draft_config()
    base_url = get_base_url(request)

    return {
        "service": "template-build-service",
        "version": VERSION,
        "public_base_url": settings.public_base_url or None,
        "computed_base_url": base_url,
        "listen_host": LISTEN_HOST,
        "port": PORT,
        "docs_url": f"{base_url}/docs",
        "health_url": f"{base_url}/health",
        "build_tool": {
            "configured": settings.tool_configured,
            "timeout_s": settings.build_timeout_s,
        },
        "draft_generator": {
            "provider": draft_config.provider,
            "enabled": draft_config.enabled,
        },
        "targets": ["webgl", "android_apk"],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
