"""
FastAPI application entry point for AccessGate.

Every route except /health and the signed lifecycle webhook requires a
valid JWT carrying the caller's tenant. Administrative routes are guarded
by the engine's own Access Decision Service.

Run with:
    uvicorn accessgate.main:app --app-dir backend
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from accessgate import __version__
from accessgate.api.routes import access
from accessgate.api.routes import audit
from accessgate.api.routes import delegations
from accessgate.api.routes import entitlements
from accessgate.api.routes import health
from accessgate.api.routes import lifecycle
from accessgate.api.routes import roles
from accessgate.config.settings import Settings
from accessgate.platform.errors import AccessGateError
from accessgate.runtime import AccessRuntime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[AccessRuntime] = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: Pre-built runtime (tests). When omitted the lifespan builds
            one from the environment and owns its shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or AccessRuntime.from_settings(Settings.from_env())
        logger.info(
            "Starting AccessGate API",
            extra={
                "database_configured": app.state.runtime.session_factory is not None,
                "jwt_configured": bool(app.state.runtime.settings.jwt_secret),
                "redis_configured": bool(app.state.runtime.settings.redis_url),
            },
        )
        if owned:
            app.state.runtime.start_refresh_loop()

        yield

        logger.info("Shutting down AccessGate API")
        if owned:
            app.state.runtime.close()

    app = FastAPI(
        title="AccessGate API",
        description="Unified multi-tenant authorization engine",
        version=__version__,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    # Include lifecycle webhook (uses HMAC verification, not JWT)
    app.include_router(lifecycle.router)

    # Include access decision routes (requires authentication)
    app.include_router(access.router)

    # Include role, delegation and entitlement administration (requires admin permissions)
    app.include_router(roles.router)
    app.include_router(delegations.router)
    app.include_router(entitlements.router)

    # Include audit export (requires audit:view)
    app.include_router(audit.router)

    @app.exception_handler(AccessGateError)
    async def access_gate_error_handler(request: Request, exc: AccessGateError):
        """Map engine errors to their HTTP status with a structured body."""
        logger.info(
            "request.rejected",
            extra={"error": exc.code, "path": request.url.path, "details": exc.details},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        tenant_id = "unknown"
        if hasattr(request.state, "tenant_context"):
            tenant_id = request.state.tenant_context.tenant_id

        logger.error(
            "Unhandled exception",
            extra={
                "tenant_id": tenant_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred",
            },
        )

    return app


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "accessgate.main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development",
    )
