"""Image proxy API endpoints."""

import asyncio
import logging
from typing import Awaitable, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from image_relay.api.config import Settings, settings
from image_relay.api.models import ErrorResponse
from image_relay.core.errors import UpstreamTimeoutError
from image_relay.core.orchestrator import ProxyOrchestrator, ProxyResponse

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-API-Key",
    "Access-Control-Max-Age": "86400",
}

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status: {"model": ErrorResponse} for status in (400, 401, 413, 429, 500, 502, 504)
}

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

router = APIRouter(prefix="/api/v1")


def get_orchestrator(request: Request) -> ProxyOrchestrator:
    """Get the orchestrator owned by the running application."""
    orchestrator: ProxyOrchestrator = request.app.state.orchestrator
    return orchestrator


def get_settings(request: Request) -> Settings:
    """Get application settings, defaulting to the environment settings."""
    app_settings: Settings = getattr(request.app.state, "settings", settings)
    return app_settings


@router.get("/image", responses=ERROR_RESPONSES)
@limiter.limit(lambda: f"{settings.rate_limit_per_minute}/minute")
async def proxy_image(
    request: Request,
    url: Optional[str] = Query(default=None, description="Absolute URL of the source image"),
    orchestrator: ProxyOrchestrator = Depends(get_orchestrator),
    app_settings: Settings = Depends(get_settings),
) -> Response:
    """
    Fetch a remote image and optionally transform it.

    Optional query parameters: `w`, `h` (1-10000), `q` (1-100), `fit`
    (contain, cover, fill, inside, outside), `format` (webp, jpeg, png,
    avif), `sharpen` (true, false or a level), `sharpenLevel` (low, medium,
    high), `text` (true, false) and `key`. Without transform parameters the
    original image is passed through.
    """
    caller = orchestrator.identity_resolver.resolve(request)
    logger.info(f"Proxy request from {caller.key}: {(url or '')[:100]}")

    timeout = app_settings.request_timeout_seconds
    try:
        result = await asyncio.wait_for(
            _run_until_disconnected(
                request,
                orchestrator.handle(request.query_params, caller, request.headers),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"Request timeout after {timeout}s")
        error = UpstreamTimeoutError(
            f"Request timeout: processing took longer than {timeout}s"
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    if result is None:
        # Client went away; nobody reads this response.
        return Response(status_code=499)

    return result.to_response()


@router.options("/image")
async def proxy_image_preflight() -> Response:
    """Answer CORS preflight requests."""
    return Response(status_code=204, headers=PREFLIGHT_HEADERS)


async def _run_until_disconnected(
    request: Request, pipeline: Awaitable[ProxyResponse]
) -> Optional[ProxyResponse]:
    """Run the pipeline, abandoning it if the client disconnects."""
    task = asyncio.ensure_future(pipeline)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, abandoning request")
                return None
    finally:
        if not task.done():
            task.cancel()
            await asyncio.wait({task})


@router.get("/health")
async def health_check(
    orchestrator: ProxyOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Health check endpoint.

    Reports response cache and rate limiter status.
    """
    checks: dict[str, dict[str, object]] = {}
    overall_status = "healthy"

    try:
        checks["response_cache"] = {"status": "healthy", **orchestrator.cache.stats()}
    except Exception as e:
        checks["response_cache"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "degraded"

    checks["rate_limiter"] = {
        "status": "healthy",
        "tracked_identities": orchestrator.rate_limiter.tracked_identities,
        "limit": orchestrator.rate_limiter.limit,
        "window_seconds": orchestrator.rate_limiter.window_seconds,
    }

    return JSONResponse(
        content={
            "status": overall_status,
            "checks": checks,
        }
    )
