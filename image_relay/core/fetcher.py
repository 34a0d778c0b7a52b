"""Origin image fetching with timeout, bounded retry and payload checks."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional

import httpx

from image_relay.api.config import BROWSER_USER_AGENT, IMAGE_ACCEPT
from image_relay.core.errors import (
    ProxyError,
    UpstreamEmptyError,
    UpstreamHTTPError,
    UpstreamNetworkError,
    UpstreamNotImageError,
    UpstreamTimeoutError,
    UpstreamTooLargeError,
)
from image_relay.core.url_guard import UrlGuard, ValidURL

logger = logging.getLogger(__name__)

FORWARDED_CALLER_HEADERS = ("accept-language",)


@dataclass(frozen=True)
class OriginImage:
    """Raw source image as received from the origin."""

    content: bytes
    content_type: str
    url: str
    attempts: int = 1

    @property
    def byte_length(self) -> int:
        return len(self.content)


class OriginFetcher:
    """Fetch source images over HTTP with bounded, linear-backoff retries."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        max_size_bytes: int = 10 * 1024 * 1024,
        max_redirects: int = 5,
        guard: Optional[UrlGuard] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize fetcher and its HTTP client."""
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_size_bytes = max_size_bytes
        self.guard = guard
        self._sleep = sleep

        event_hooks = {"request": [self._check_redirect]} if guard else {}
        self.client = httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=True,
            max_redirects=max_redirects,
            transport=transport,
            event_hooks=event_hooks,
        )

    async def fetch(
        self, url: ValidURL, caller_headers: Optional[Mapping[str, str]] = None
    ) -> OriginImage:
        """
        Fetch a source image.

        Timeouts and transport errors are retried up to `max_retries` times,
        waiting `backoff_seconds * attempt` between attempts. HTTP status and
        payload failures, undecodable bodies and redirect loops are never retried.

        Args:
            url: Validated source URL
            caller_headers: Inbound request headers, partially forwarded

        Returns:
            The fetched image

        Raises:
            UpstreamTimeoutError: If every attempt timed out
            UpstreamNetworkError: If the last attempt failed at transport level
                or the origin sent an undecodable body or too many redirects
            UpstreamHTTPError: If the origin answered with a non-2xx status
            UpstreamNotImageError: If the content type is not image/*
            UpstreamTooLargeError: If the body exceeds the size ceiling
            UpstreamEmptyError: If the body is empty
        """
        headers = self._build_headers(url, caller_headers or {})
        total_attempts = self.max_retries + 1
        last_error: ProxyError = UpstreamNetworkError()

        for attempt in range(1, total_attempts + 1):
            try:
                logger.info(f"Fetching {url.url[:100]} (attempt {attempt}/{total_attempts})")
                content, content_type = await asyncio.wait_for(
                    self._attempt(url.url, headers), timeout=self.timeout_seconds
                )
                logger.info(
                    f"Fetched {len(content) / 1024:.1f}KB ({content_type}) "
                    f"after {attempt} attempt(s)"
                )
                return OriginImage(
                    content=content,
                    content_type=content_type,
                    url=url.url,
                    attempts=attempt,
                )

            except (asyncio.TimeoutError, httpx.TimeoutException):
                last_error = UpstreamTimeoutError(
                    f"Timed out fetching source after {attempt} attempt(s)",
                    attempts=attempt,
                )

            except httpx.TransportError as e:
                last_error = UpstreamNetworkError(
                    f"Network error fetching source: {type(e).__name__}",
                    attempts=attempt,
                )

            except (httpx.DecodingError, httpx.TooManyRedirects) as e:
                # Deterministic origin faults, not retried.
                logger.warning(f"Fetch attempt {attempt} failed: {type(e).__name__}")
                raise UpstreamNetworkError(
                    f"Invalid response from source: {type(e).__name__}",
                    attempts=attempt,
                )

            logger.warning(f"Fetch attempt {attempt} failed: {last_error.message}")
            if attempt < total_attempts:
                await self._sleep(self.backoff_seconds * attempt)

        logger.error(f"All {total_attempts} fetch attempts failed for {url.url[:100]}")
        raise last_error

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _attempt(self, url: str, headers: dict[str, str]) -> tuple[bytes, str]:
        """Run a single streaming GET and enforce response checks."""
        async with self.client.stream("GET", url, headers=headers) as response:
            if not response.is_success:
                raise UpstreamHTTPError(response.status_code)

            content_type = response.headers.get("content-type", "").strip()
            if not content_type.lower().startswith("image/"):
                raise UpstreamNotImageError(
                    f"Source content type is not an image: {content_type or 'missing'}"
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_size_bytes:
                raise UpstreamTooLargeError(self._too_large_message(int(declared)))

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self.max_size_bytes:
                    raise UpstreamTooLargeError(self._too_large_message(received))
                chunks.append(chunk)

        if received == 0:
            raise UpstreamEmptyError()

        return b"".join(chunks), content_type

    def _build_headers(
        self, url: ValidURL, caller_headers: Mapping[str, str]
    ) -> dict[str, str]:
        headers = {
            "User-Agent": BROWSER_USER_AGENT,
            "Accept": IMAGE_ACCEPT,
            "Referer": f"{url.origin}/",
        }
        for name in FORWARDED_CALLER_HEADERS:
            value = caller_headers.get(name)
            if value:
                headers[name.title()] = value
        return headers

    async def _check_redirect(self, request: httpx.Request) -> None:
        """Re-validate every outgoing request, including redirect hops."""
        if self.guard is not None:
            self.guard.validate(str(request.url))

    def _too_large_message(self, size: int) -> str:
        return (
            f"Source image too large: {size / (1024 * 1024):.2f}MB "
            f"(max: {self.max_size_bytes / (1024 * 1024):.0f}MB)"
        )
