"""End-to-end proxy pipeline and error mapping."""

import json
import logging
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional

from fastapi.responses import Response

from image_relay.api.config import CACHE_CONTROL, Settings
from image_relay.core.cache import CacheEntry, ResponseCache
from image_relay.core.codec import ImageCodec
from image_relay.core.errors import (
    InternalError,
    ProxyError,
    RateLimitedError,
    UnauthorizedError,
)
from image_relay.core.fetcher import OriginFetcher
from image_relay.core.planner import TransformPlanner
from image_relay.core.rate_limiter import Admission, Denied, RateLimiter
from image_relay.core.url_guard import UrlGuard
from image_relay.utils.identity import CallerIdentity, IdentityResolver

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    VALIDATING = "validating"
    RATE_CHECKING = "rate_checking"
    CACHE_LOOKUP = "cache_lookup"
    FETCHING = "fetching"
    PLANNING = "planning"
    ENCODING = "encoding"
    CACHING = "caching"
    RESPONDING = "responding"
    ERRORING = "erroring"


@dataclass
class ProxyResponse:
    """Outcome of one pipeline run, ready to be sent to the caller."""

    status_code: int
    content: bytes
    media_type: str
    headers: dict[str, str] = field(default_factory=dict)
    error: Optional[ProxyError] = None
    stage: Stage = Stage.RESPONDING
    failed_stage: Optional[Stage] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_response(self) -> Response:
        return Response(
            content=self.content,
            status_code=self.status_code,
            media_type=self.media_type,
            headers={"Content-Length": str(len(self.content)), **self.headers},
        )


class ProxyOrchestrator:
    """
    Sequence guard, limiter, cache, fetcher, planner and codec per request.

    The pipeline moves strictly forward through `Stage`; any failure jumps to
    ERRORING and ends the request. Only the fetcher retries internally and
    only the codec has a fallback path.
    """

    def __init__(
        self,
        guard: UrlGuard,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        fetcher: OriginFetcher,
        planner: TransformPlanner,
        codec: ImageCodec,
        identity_resolver: IdentityResolver,
        require_api_key: bool = False,
        debug_errors: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.guard = guard
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.fetcher = fetcher
        self.planner = planner
        self.codec = codec
        self.identity_resolver = identity_resolver
        self.require_api_key = require_api_key
        self.debug_errors = debug_errors
        self._clock = clock

    async def start(self) -> None:
        self.rate_limiter.start()

    async def close(self) -> None:
        await self.rate_limiter.stop()
        await self.fetcher.aclose()

    async def handle(
        self,
        query: Mapping[str, str],
        caller: CallerIdentity,
        caller_headers: Optional[Mapping[str, str]] = None,
    ) -> ProxyResponse:
        """
        Run the full pipeline for one request.

        Args:
            query: Raw query parameters
            caller: Resolved caller identity
            caller_headers: Inbound request headers

        Returns:
            Image or structured error response; never raises ProxyError
        """
        start_time = time.time()
        stage = Stage.VALIDATING
        admission: Optional[Admission] = None

        try:
            if self.require_api_key and caller.kind != "key":
                raise UnauthorizedError()

            url = self.guard.validate(query.get("url"))
            request = self.planner.build_request(query, url.url, caller)

            stage = self._advance(stage, Stage.RATE_CHECKING)
            admission = await self.rate_limiter.admit(caller)
            if isinstance(admission, Denied):
                raise RateLimitedError(
                    f"Rate limit of {admission.limit} requests per "
                    f"{int(self.rate_limiter.window_seconds)}s exceeded",
                    remaining=0,
                    reset_at=int(admission.retry_after),
                )

            stage = self._advance(stage, Stage.CACHE_LOOKUP)
            signature = self.cache.signature(request, self.planner.feature_flags)
            entry = await self.cache.get(signature)
            if entry is not None:
                logger.info(f"Cache hit for {signature}")
                stage = self._advance(stage, Stage.RESPONDING)
                return self._image_response(entry, admission, cache_status="HIT")

            logger.info(f"Cache miss for {signature}, fetching source")
            stage = self._advance(stage, Stage.FETCHING)
            origin = await self.fetcher.fetch(url, caller_headers)

            if request.wants_transform:
                stage = self._advance(stage, Stage.PLANNING)
                metadata = await self.codec.read_metadata(origin.content)
                plan = self.planner.plan(request, metadata)

                stage = self._advance(stage, Stage.ENCODING)
                content, content_type = await self.codec.transform(origin.content, plan)
                entry = CacheEntry(
                    content=content,
                    content_type=content_type,
                    original_size=origin.byte_length,
                    transformed=True,
                )
            else:
                entry = CacheEntry(content=origin.content, content_type=origin.content_type)

            stage = self._advance(stage, Stage.CACHING)
            await self.cache.put(signature, entry)

            stage = self._advance(stage, Stage.RESPONDING)
            processing_ms = int((time.time() - start_time) * 1000)
            logger.info(
                f"Served {entry.size / 1024:.1f}KB {entry.content_type} "
                f"in {processing_ms}ms"
            )
            return self._image_response(entry, admission, cache_status="MISS")

        except ProxyError as e:
            return self._error_response(e, stage, admission)

        except Exception as e:
            logger.error(f"Unexpected error during {stage.value}: {e}", exc_info=True)
            error = InternalError()
            if self.debug_errors:
                error.extra["detail"] = traceback.format_exc()
            return self._error_response(error, stage, admission)

    def _advance(self, current: Stage, following: Stage) -> Stage:
        logger.debug(f"Pipeline stage {current.value} -> {following.value}")
        return following

    def _image_response(
        self, entry: CacheEntry, admission: Optional[Admission], cache_status: str
    ) -> ProxyResponse:
        headers = {
            "Cache-Control": CACHE_CONTROL,
            "Vary": "Accept",
            "X-Cache": cache_status,
        }
        headers.update(self._rate_limit_headers(admission))

        if entry.transformed and entry.original_size:
            reduction = (1 - entry.size / entry.original_size) * 100
            headers["X-Original-Size"] = str(entry.original_size)
            headers["X-Optimized-Size"] = str(entry.size)
            headers["X-Size-Reduction"] = f"{reduction:.1f}%"

        return ProxyResponse(
            status_code=200,
            content=entry.content,
            media_type=entry.content_type,
            headers=headers,
        )

    def _error_response(
        self, error: ProxyError, stage: Stage, admission: Optional[Admission]
    ) -> ProxyResponse:
        level = logging.ERROR if error.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            f"Request failed during {stage.value}: {error.kind} "
            f"({error.status_code}): {error.message}",
        )
        failed_stage = stage
        stage = self._advance(stage, Stage.ERRORING)

        headers = self._rate_limit_headers(admission)
        if isinstance(admission, Denied):
            headers["Retry-After"] = str(admission.retry_after_seconds(self._clock()))

        return ProxyResponse(
            status_code=error.status_code,
            content=json.dumps(error.to_dict()).encode("utf-8"),
            media_type="application/json",
            headers=headers,
            error=error,
            stage=stage,
            failed_stage=failed_stage,
        )

    @staticmethod
    def _rate_limit_headers(admission: Optional[Admission]) -> dict[str, str]:
        if admission is None:
            return {}
        if isinstance(admission, Denied):
            return {
                "X-RateLimit-Limit": str(admission.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(admission.retry_after)),
            }
        if admission.unlimited:
            return {
                "X-RateLimit-Limit": "unlimited",
                "X-RateLimit-Remaining": "unlimited",
            }
        headers = {
            "X-RateLimit-Limit": str(admission.limit),
            "X-RateLimit-Remaining": str(admission.remaining),
        }
        if admission.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(int(admission.reset_at))
        return headers


def build_orchestrator(settings: Settings, **overrides: object) -> ProxyOrchestrator:
    """
    Build an orchestrator from settings.

    Keyword overrides replace individual components, e.g. a fetcher with a
    test transport.
    """
    guard = UrlGuard()
    components: dict[str, object] = {
        "guard": guard,
        "rate_limiter": RateLimiter(
            limit=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
        ),
        "cache": ResponseCache(
            max_size_mb=settings.cache_max_size_mb,
            ttl_seconds=settings.cache_ttl_seconds,
        ),
        "planner": TransformPlanner(
            text_aspect_ratio=settings.text_aspect_ratio,
            small_image_px=settings.small_image_px,
            always_sharpen=settings.always_sharpen,
            default_output_format=settings.default_output_format,
        ),
        "codec": ImageCodec(
            timeout_seconds=settings.codec_timeout_seconds,
            max_input_pixels=settings.max_input_pixels,
        ),
        "identity_resolver": IdentityResolver(
            admin_ips=settings.admin_ips_list,
            api_keys=settings.api_keys_list,
            trusted_proxies=settings.trusted_proxies_list,
        ),
    }
    components.update(overrides)
    if "fetcher" not in components:
        components["fetcher"] = OriginFetcher(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_retries=settings.fetch_max_retries,
            backoff_seconds=settings.fetch_backoff_seconds,
            max_size_bytes=settings.max_image_size_bytes,
            max_redirects=settings.fetch_max_redirects,
            guard=guard,
        )

    return ProxyOrchestrator(
        require_api_key=settings.require_api_key,
        debug_errors=settings.debug_errors,
        **components,  # type: ignore[arg-type]
    )
