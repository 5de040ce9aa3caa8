from datetime import timedelta

from tokenpool.cache import (
    DYNAMIC_THRESHOLD_TTL,
    GROUP_METADATA_TTL,
    PEER_WINDOWS_TTL,
    THRESHOLD_KEY,
    TieredCache,
    TTLCache,
)


class TestTTLCache:
    def test_hit_before_expiry_miss_at_expiry(self, clock: "object") -> "None":
        cache: "TTLCache[str, int]" = TTLCache("test", timedelta(seconds=30), clock)
        cache.set("a", 1)

        clock.advance(seconds=30, milliseconds=-1)
        assert cache.get("a") == 1

        clock.advance(milliseconds=1)
        assert cache.get("a") is None
        # the expired entry was dropped on access
        assert len(cache) == 0

    def test_miss_is_none(self, clock: "object") -> "None":
        cache: "TTLCache[str, int]" = TTLCache("test", timedelta(seconds=30), clock)
        assert cache.get("missing") is None
        assert "missing" not in cache

    def test_set_replaces_and_resets_ttl(self, clock: "object") -> "None":
        cache: "TTLCache[str, int]" = TTLCache("test", timedelta(seconds=30), clock)
        cache.set("a", 1)
        clock.advance(seconds=20)
        entry = cache.set("a", 2)

        assert entry.created_at == clock.now
        assert entry.expires_at == clock.now + timedelta(seconds=30)
        clock.advance(seconds=20)
        assert cache.get("a") == 2

    def test_write_sweeps_expired_entries(self, clock: "object") -> "None":
        cache: "TTLCache[str, int]" = TTLCache("test", timedelta(seconds=30), clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.advance(seconds=31)
        cache.set("c", 3)

        assert len(cache) == 1
        assert "c" in cache

    def test_sweep_returns_evicted_count(self, clock: "object") -> "None":
        cache: "TTLCache[str, int]" = TTLCache("test", timedelta(seconds=30), clock)
        cache.set("a", 1)
        clock.advance(seconds=10)
        cache.set("b", 2)
        clock.advance(seconds=25)

        assert cache.sweep() == 1
        assert cache.get("b") == 2

    def test_invalidate_where(self, clock: "object") -> "None":
        cache: "TTLCache[tuple[str, str], int]" = TTLCache(
            "test", timedelta(seconds=30), clock
        )
        cache.set(("g1", "a"), 1)
        cache.set(("g1", "b"), 2)
        cache.set(("g2", "a"), 3)

        assert cache.invalidate_where(lambda k: k[0] == "g1") == 2
        assert cache.get(("g2", "a")) == 3
        assert cache.invalidate(("g2", "a")) is True
        assert cache.invalidate(("g2", "a")) is False


class TestTieredCache:
    def test_tiers_expire_independently(self, clock: "object") -> "None":
        caches = TieredCache(clock)
        caches.group_metadata.set("g1", "snapshot")
        caches.peer_windows.set(("g1", "me"), ())
        caches.dynamic_threshold.set(THRESHOLD_KEY, 123)

        clock.advance(seconds=PEER_WINDOWS_TTL.total_seconds())
        assert caches.peer_windows.get(("g1", "me")) is None
        assert caches.group_metadata.get("g1") == "snapshot"

        clock.advance(seconds=(GROUP_METADATA_TTL - PEER_WINDOWS_TTL).total_seconds())
        assert caches.group_metadata.get("g1") is None
        assert caches.dynamic_threshold.get(THRESHOLD_KEY) == 123

        clock.advance(seconds=(DYNAMIC_THRESHOLD_TTL - GROUP_METADATA_TTL).total_seconds())
        assert caches.dynamic_threshold.get(THRESHOLD_KEY) is None

    def test_evict_group_leaves_other_groups(self, clock: "object") -> "None":
        caches = TieredCache(clock)
        caches.group_metadata.set("g1", "one")
        caches.group_metadata.set("g2", "two")
        caches.peer_windows.set(("g1", "a"), ())
        caches.peer_windows.set(("g1", "b"), ())
        caches.peer_windows.set(("g2", "a"), ())
        caches.dynamic_threshold.set(THRESHOLD_KEY, 1)

        caches.evict_group("g1")

        assert caches.group_metadata.get("g1") is None
        assert caches.group_metadata.get("g2") == "two"
        assert ("g1", "a") not in caches.peer_windows
        assert ("g1", "b") not in caches.peer_windows
        assert ("g2", "a") in caches.peer_windows
        assert caches.dynamic_threshold.get(THRESHOLD_KEY) == 1

    def test_evict_group_for_one_actor(self, clock: "object") -> "None":
        caches = TieredCache(clock)
        caches.peer_windows.set(("g1", "a"), ())
        caches.peer_windows.set(("g1", "b"), ())

        caches.evict_group("g1", "a")

        assert ("g1", "a") not in caches.peer_windows
        assert ("g1", "b") in caches.peer_windows

    def test_sweep_and_clear(self, clock: "object") -> "None":
        caches = TieredCache(clock)
        caches.group_metadata.set("g1", "one")
        caches.peer_windows.set(("g1", "a"), ())
        clock.advance(minutes=1)

        assert caches.sweep() == 1

        caches.clear()
        assert len(caches.group_metadata) == 0
