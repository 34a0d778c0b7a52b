"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from image_relay.api.config import Settings, settings
from image_relay.api.routes import proxy
from image_relay.core.orchestrator import build_orchestrator
from image_relay.utils.metrics import configure_logging

logger = logging.getLogger(__name__)

SERVICE_NAME = "Image Relay"
SERVICE_VERSION = "1.0.0"

EXPOSED_HEADERS = [
    "X-Cache",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "X-Original-Size",
    "X-Optimized-Size",
    "X-Size-Reduction",
    "Retry-After",
]


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Handle burst rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimited",
            "message": f"Burst limit exceeded ({exc.detail}). Please try again later.",
        },
    )


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the application with its own orchestrator lifecycle.

    Args:
        app_settings: Settings to use instead of the environment settings

    Returns:
        Configured FastAPI application
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application lifespan events."""
        logger.info("Starting application...")
        configure_logging(log_level=app_settings.log_level, log_format=app_settings.log_format)
        orchestrator = build_orchestrator(app_settings)
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        logger.info("Application started successfully")

        yield

        logger.info("Shutting down application...")
        await orchestrator.close()
        logger.info("Application shut down successfully")

    app = FastAPI(
        title=f"{SERVICE_NAME} Service",
        description="Image fetch, transform and cache proxy with abuse control",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.state.settings = app_settings
    app.state.limiter = proxy.limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)  # type: ignore[arg-type]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins_list,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    app.include_router(proxy.router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "usage": "/api/v1/image?url=<image url>&w=400&format=webp",
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "image_relay.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
