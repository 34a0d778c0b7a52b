"""Sliding-window admission control per caller identity."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from image_relay.utils.identity import CallerIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admitted:
    """Request admitted; `remaining` is None for unlimited callers."""

    limit: int
    remaining: Optional[int]
    reset_at: Optional[float] = None
    unlimited: bool = False


@dataclass(frozen=True)
class Denied:
    """Request rejected; `retry_after` is the absolute time a slot frees up."""

    limit: int
    retry_after: float

    def retry_after_seconds(self, now: float) -> int:
        return max(0, int(self.retry_after - now + 0.999))


Admission = Union[Admitted, Denied]


class RateLimiter:
    """
    In-memory sliding-window rate limiter.

    Each identity owns an ordered list of request timestamps that falls
    inside the trailing window. Identities whose window empties out are
    dropped, both lazily on admission and by a periodic background sweep.
    """

    def __init__(
        self,
        limit: int = 50,
        window_seconds: float = 3600,
        sweep_interval_seconds: float = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize limiter with an empty window store."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._windows: dict[str, list[float]] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task[None]] = None

    @property
    def tracked_identities(self) -> int:
        return len(self._windows)

    async def admit(self, identity: CallerIdentity) -> Admission:
        """
        Admit or deny a request from an identity.

        Privileged identities are admitted without touching any window.

        Args:
            identity: Caller identity to account the request against

        Returns:
            Admitted with remaining quota, or Denied with the retry time
        """
        if identity.unlimited:
            return Admitted(limit=self.limit, remaining=None, unlimited=True)

        async with self._lock:
            now = self._clock()
            timestamps = self._prune(identity.key, now)

            if len(timestamps) >= self.limit:
                retry_after = timestamps[0] + self.window_seconds
                logger.info(
                    f"Rate limit reached for {identity.key}: "
                    f"{len(timestamps)}/{self.limit}"
                )
                return Denied(limit=self.limit, retry_after=retry_after)

            timestamps.append(now)
            self._windows[identity.key] = timestamps
            return Admitted(
                limit=self.limit,
                remaining=self.limit - len(timestamps),
                reset_at=timestamps[0] + self.window_seconds,
            )

    async def usage(self, identity: CallerIdentity) -> int:
        """Count requests in the identity's current window without consuming."""
        async with self._lock:
            return len(self._prune(identity.key, self._clock()))

    async def sweep(self) -> int:
        """
        Prune every window and evict identities left empty.

        Returns:
            Number of evicted identities
        """
        async with self._lock:
            now = self._clock()
            before = len(self._windows)
            for key in list(self._windows):
                self._prune(key, now)
            evicted = before - len(self._windows)

        if evicted:
            logger.debug(f"Rate limit sweep evicted {evicted} identities")
        return evicted

    def start(self) -> None:
        """Start the periodic background sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_forever())
            logger.info(
                f"Rate limit sweep started (every {self.sweep_interval_seconds}s)"
            )

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Rate limit sweep failed: {e}", exc_info=True)

    def _prune(self, key: str, now: float) -> list[float]:
        """Drop expired timestamps for a key; caller must hold the lock."""
        cutoff = now - self.window_seconds
        timestamps = [t for t in self._windows.get(key, []) if t > cutoff]
        if timestamps:
            self._windows[key] = timestamps
        else:
            self._windows.pop(key, None)
        return timestamps
