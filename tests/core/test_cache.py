"""Tests for caching system."""

import pytest

from image_relay.core.cache import CacheEntry, LRUCache, ResponseCache
from image_relay.core.planner import TransformPlanner
from image_relay.utils.identity import CallerIdentity

SOURCE_URL = "https://images.example.com/a.jpg"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def entry(body: bytes, content_type: str = "image/webp") -> CacheEntry:
    return CacheEntry(content=body, content_type=content_type)


class TestLRUCache:
    """Test in-memory LRU cache."""

    def test_set_and_get(self) -> None:
        """Test basic set and get operations."""
        cache = LRUCache(max_size_mb=1)
        cache.set("key1", entry(b"value1"))

        result = cache.get("key1")
        assert result == entry(b"value1")

    def test_cache_miss(self) -> None:
        """Test cache miss returns None."""
        cache = LRUCache(max_size_mb=1)
        result = cache.get("nonexistent")
        assert result is None

    def test_lru_eviction(self) -> None:
        """Test that LRU items are evicted when size limit reached."""
        cache = LRUCache(max_size_mb=0.0001)

        cache.set("key1", entry(b"a" * 50))
        cache.set("key2", entry(b"b" * 50))
        cache.set("key3", entry(b"c" * 50))

        assert cache.get("key1") is None
        assert cache.get("key3") == entry(b"c" * 50)
        assert cache.current_size <= cache.max_size_bytes

    def test_get_refreshes_recency(self) -> None:
        cache = LRUCache(max_size_mb=0.0001)

        cache.set("key1", entry(b"a" * 40))
        cache.set("key2", entry(b"b" * 40))
        cache.get("key1")
        cache.set("key3", entry(b"c" * 40))

        assert cache.get("key1") is not None
        assert cache.get("key2") is None

    def test_oversized_entry_is_not_stored(self) -> None:
        """Test an entry larger than the whole budget leaves the cache intact."""
        cache = LRUCache(max_size_mb=0.0001)
        cache.set("small", entry(b"a" * 10))
        cache.set("huge", entry(b"x" * 1000))

        assert cache.get("huge") is None
        assert cache.get("small") is not None

    def test_overwrite_updates_size(self) -> None:
        cache = LRUCache(max_size_mb=1)
        cache.set("key1", entry(b"a" * 100))
        cache.set("key1", entry(b"b" * 10))

        assert cache.current_size == 10
        assert cache.get("key1") == entry(b"b" * 10)

    def test_ttl_expiry(self) -> None:
        clock = FakeClock()
        cache = LRUCache(max_size_mb=1, ttl_seconds=60, clock=clock)
        cache.set("key1", entry(b"value"))

        clock.now += 59
        assert cache.get("key1") is not None

        clock.now += 2
        assert cache.get("key1") is None
        assert cache.current_size == 0

    def test_clear(self) -> None:
        """Test cache clearing."""
        cache = LRUCache(max_size_mb=1)
        cache.set("key1", entry(b"value1"))
        cache.clear()

        assert cache.get("key1") is None
        assert cache.current_size == 0


class TestResponseCache:
    """Test signature-keyed response cache."""

    @pytest.fixture
    def build(self, planner: TransformPlanner, anonymous_caller: CallerIdentity):
        def _build(caller: CallerIdentity = anonymous_caller, **query: str):
            return planner.build_request(query, SOURCE_URL, caller)

        return _build

    @pytest.mark.asyncio
    async def test_put_and_get(self, response_cache: ResponseCache) -> None:
        stored = CacheEntry(
            content=b"RIFFdata", content_type="image/webp", original_size=100, transformed=True
        )
        await response_cache.put("image:abc", stored)

        assert await response_cache.get("image:abc") == stored
        assert await response_cache.get("image:missing") is None

        stats = response_cache.stats()
        assert stats["entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_clear(self, response_cache: ResponseCache) -> None:
        await response_cache.put("image:abc", entry(b"data"))
        await response_cache.clear()

        assert await response_cache.get("image:abc") is None

    def test_signature_is_deterministic(self, response_cache: ResponseCache, build) -> None:
        """Test parameter order never changes the signature."""
        first = build(w="400", q="80", format="webp")
        second = build(format="webp", q="80", w="400")

        assert response_cache.signature(first) == response_cache.signature(second)
        assert response_cache.signature(first).startswith("image:")

    @pytest.mark.parametrize(
        "query",
        [
            {"w": "401"},
            {"h": "400"},
            {"w": "400", "q": "80"},
            {"w": "400", "fit": "cover"},
            {"w": "400", "format": "png"},
            {"w": "400", "sharpen": "true"},
            {"w": "400", "text": "true"},
        ],
    )
    def test_signature_changes_with_any_parameter(
        self, response_cache: ResponseCache, build, query: dict
    ) -> None:
        base = response_cache.signature(build(w="400"))
        assert response_cache.signature(build(**query)) != base

    def test_unset_differs_from_explicit_default(
        self, response_cache: ResponseCache, build
    ) -> None:
        """Test an unset fit is keyed apart from an explicit 'inside'."""
        unset = response_cache.signature(build(w="400"))
        explicit = response_cache.signature(build(w="400", fit="inside"))
        assert unset != explicit

    def test_signature_ignores_caller(
        self, response_cache: ResponseCache, build, privileged_caller: CallerIdentity
    ) -> None:
        anonymous = response_cache.signature(build(w="400"))
        privileged = response_cache.signature(build(privileged_caller, w="400"))
        assert anonymous == privileged

    def test_signature_includes_flags(self, response_cache: ResponseCache, build) -> None:
        request = build(w="400")
        webp = TransformPlanner().feature_flags
        source = TransformPlanner(default_output_format="source").feature_flags

        assert response_cache.signature(request, webp) != response_cache.signature(request, source)
        assert response_cache.signature(request, webp) == response_cache.signature(request, webp)
