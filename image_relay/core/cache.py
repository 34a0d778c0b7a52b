"""In-memory response cache keyed by transform signature."""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from image_relay.api.models import TransformRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Encoded response body ready to be served again."""

    content: bytes
    content_type: str
    original_size: Optional[int] = None
    transformed: bool = False

    @property
    def size(self) -> int:
        return len(self.content)


class LRUCache:
    """In-memory LRU cache with byte-size limit and optional TTL."""

    def __init__(
        self,
        max_size_mb: float = 256,
        ttl_seconds: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize LRU cache with size limit in megabytes."""
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self.ttl_seconds = ttl_seconds
        self.current_size = 0
        self.cache: OrderedDict[str, tuple[CacheEntry, float]] = OrderedDict()
        self._clock = clock

    def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry from cache, moving it to the most recently used end."""
        item = self.cache.pop(key, None)
        if item is None:
            logger.debug(f"L1 cache miss: {key}")
            return None

        entry, stored_at = item
        if self.ttl_seconds and self._clock() - stored_at > self.ttl_seconds:
            self.current_size -= entry.size
            logger.debug(f"L1 cache expired: {key}")
            return None

        self.cache[key] = item
        logger.debug(f"L1 cache hit: {key}")
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        """Set entry in cache, evicting LRU items if needed."""
        if key in self.cache:
            old_entry, _ = self.cache.pop(key)
            self.current_size -= old_entry.size

        if entry.size > self.max_size_bytes:
            logger.warning(
                f"Value too large for L1 cache: {entry.size / (1024 * 1024):.2f}MB"
            )
            return

        while self.current_size + entry.size > self.max_size_bytes and self.cache:
            evicted_key, (evicted, _) = self.cache.popitem(last=False)
            self.current_size -= evicted.size
            logger.debug(f"L1 cache evicted: {evicted_key} ({evicted.size} bytes)")

        self.cache[key] = (entry, self._clock())
        self.current_size += entry.size
        logger.debug(
            f"L1 cache set: {key} ({entry.size} bytes, "
            f"total: {self.current_size / (1024 * 1024):.2f}MB)"
        )

    def clear(self) -> None:
        """Clear all items from cache."""
        self.cache.clear()
        self.current_size = 0
        logger.info("L1 cache cleared")


class ResponseCache:
    """Signature-keyed response cache shared by concurrent requests."""

    def __init__(self, max_size_mb: float = 256, ttl_seconds: float = 0) -> None:
        """Initialize response cache with an L1 LRU cache."""
        self.l1_cache = LRUCache(max_size_mb=max_size_mb, ttl_seconds=ttl_seconds)
        self.hits = 0
        self.misses = 0
        self._lock = asyncio.Lock()

    async def get(self, signature: str) -> Optional[CacheEntry]:
        """
        Get cached response.

        Args:
            signature: Transform signature

        Returns:
            Cached entry, or None if not found
        """
        async with self._lock:
            entry = self.l1_cache.get(signature)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    async def put(self, signature: str, entry: CacheEntry) -> None:
        """
        Store response under a signature.

        Args:
            signature: Transform signature
            entry: Encoded response
        """
        async with self._lock:
            self.l1_cache.set(signature, entry)

    def signature(
        self, request: TransformRequest, flags: Optional[Mapping[str, object]] = None
    ) -> str:
        """
        Generate the cache signature of a request.

        Every output-affecting parameter is serialised with sorted keys, so
        the order callers pass parameters in never matters and unset values
        stay distinct from explicit defaults.

        Args:
            request: Validated transform request
            flags: Deployment flags that change output bytes

        Returns:
            Cache key string
        """
        payload = {
            "request": request.signature_fields(),
            "flags": dict(flags or {}),
        }
        key_string = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        key_hash = hashlib.sha256(key_string.encode()).hexdigest()[:32]

        return f"image:{key_hash}"

    def stats(self) -> dict[str, object]:
        return {
            "entries": len(self.l1_cache.cache),
            "size_mb": round(self.l1_cache.current_size / (1024 * 1024), 2),
            "hits": self.hits,
            "misses": self.misses,
        }

    async def clear(self) -> None:
        """Clear L1 cache."""
        async with self._lock:
            self.l1_cache.clear()
