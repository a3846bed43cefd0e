"""
FastAPI application entry point for the Graph credential service.

Owns the OAuth flow for the Instagram Graph API, the encrypted credential
store and the background rotation loop.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from graph_auth import __version__
from graph_auth.api.routes import auth
from graph_auth.api.routes import diagnostics
from graph_auth.config.settings import OAuthSettings
from graph_auth.database.session import get_session_factory, init_db
from graph_auth.platform.secrets import SecretRedactingFilter
from graph_auth.services.credential_service import build_credential_service

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
for handler in logging.getLogger().handlers:
    handler.addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Graph credential service")

    settings = OAuthSettings.from_env()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. The credential store cannot start.")
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})

    init_db()
    service = build_credential_service(settings, get_session_factory())
    app.state.credential_service = service
    service.token_manager.start()

    logger.info(
        "Credential service ready",
        extra={
            "environment": settings.environment,
            "graph_api_version": settings.graph_api_version,
            "rotation_interval_seconds": settings.rotation_interval_seconds,
        },
    )

    yield

    # Shutdown
    logger.info("Shutting down Graph credential service")
    await service.close()


# Create FastAPI app
app = FastAPI(
    title="Graph Credential Service",
    description="OAuth credential lifecycle for the Instagram Graph API",
    version=__version__,
    lifespan=lifespan
)

# OAuth flow routes (browser redirects)
app.include_router(auth.router)

# Credential status and diagnostics routes (operator-facing)
app.include_router(diagnostics.router)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
