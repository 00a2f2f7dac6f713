"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from regtruth.api import conflicts_router, graph_router, releases_router, rules_router
from regtruth.api.deps import status_for_error
from regtruth.core.config import get_settings
from regtruth.core.errors import RegTruthError
from regtruth.core.logging_config import configure_logging
from regtruth.storage import init_db

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(f"[App] Starting {settings.app_name}")

    init_db()

    yield

    logger.info("[App] Shutting down")


async def regtruth_error_handler(request: Request, exc: RegTruthError) -> JSONResponse:
    return JSONResponse(status_code=status_for_error(type(exc)), content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Lifecycle, conflict resolution and releases for regulatory rules",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS_ORIGINS is a comma-separated list, "*" by default
    cors_origins_str = os.getenv("CORS_ORIGINS", "*")
    cors_origins = cors_origins_str.split(",") if cors_origins_str != "*" else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RegTruthError, regtruth_error_handler)

    app.include_router(rules_router)      # /rules
    app.include_router(conflicts_router)  # /conflicts
    app.include_router(releases_router)   # /releases
    app.include_router(graph_router)      # /graph

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": VERSION,
            "endpoints": {
                "rules": "/rules - Rule lifecycle and review queue",
                "conflicts": "/conflicts - Conflict resolution and human decisions",
                "releases": "/releases - Versioned releases and rollback",
                "graph": "/graph - Reference graph traces and rebuilds",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
