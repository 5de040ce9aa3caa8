from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generic, TypeVar

import structlog

from tokenpool.models import GroupSnapshot, PeerWindow

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], datetime]

GROUP_METADATA_TTL = timedelta(minutes=5)
# matches the default sync cadence of peers
PEER_WINDOWS_TTL = timedelta(seconds=30)
DYNAMIC_THRESHOLD_TTL = timedelta(hours=2)

# the dynamic threshold cache holds a single value
THRESHOLD_KEY = "dynamic-threshold"


def utc_now() -> "datetime":
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[V]):
    data: "V"
    created_at: "datetime"
    expires_at: "datetime"

    def is_valid(self, now: "datetime") -> "bool":
        return now < self.expires_at


class TTLCache(Generic[K, V]):
    """
    TTLCache is a small map whose entries expire after a fixed TTL.

    A missing or expired entry is a miss, never an error. Expired
    entries are swept on every write and whenever sweep() is called,
    which keeps memory bounded.
    """

    def __init__(
        self,
        name: "str",
        ttl: "timedelta",
        clock: "Clock" = utc_now,
    ) -> "None":
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: "dict[K, CacheEntry[V]]" = {}

    def __len__(self) -> "int":
        return len(self._entries)

    def __contains__(self, key: "K") -> "bool":
        return self.get_entry(key) is not None

    def get_entry(self, key: "K") -> "CacheEntry[V] | None":
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: "K") -> "V | None":
        entry = self.get_entry(key)
        return entry.data if entry is not None else None

    def set(self, key: "K", value: "V") -> "CacheEntry[V]":
        now = self._clock()
        entry = CacheEntry(data=value, created_at=now, expires_at=now + self.ttl)
        self._entries[key] = entry
        self.sweep()
        return entry

    def invalidate(self, key: "K") -> "bool":
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: "Callable[[K], bool]") -> "int":
        """
        removes every key matching predicate. Returns the number of
        removed entries.
        """
        to_remove = [k for k in self._entries if predicate(k)]
        for k in to_remove:
            del self._entries[k]
        return len(to_remove)

    def clear(self) -> "None":
        self._entries.clear()

    def sweep(self) -> "int":
        """
        removes all expired entries and returns how many were dropped.
        """
        now = self._clock()
        evicted = self.invalidate_where(
            lambda k: not self._entries[k].is_valid(now)
        )
        if evicted:
            logger.debug("cache_swept", cache=self.name, count=evicted)
        return evicted


class TieredCache:
    """
    TieredCache owns the three independently aged caches used when
    talking to the remote store:
     - group_metadata: group record and members, keyed by group id.
     - peer_windows: remote windows, keyed by (group id, actor id).
     - dynamic_threshold: the price-derived token threshold.
    """

    def __init__(
        self,
        clock: "Clock" = utc_now,
        group_metadata_ttl: "timedelta" = GROUP_METADATA_TTL,
        peer_windows_ttl: "timedelta" = PEER_WINDOWS_TTL,
        dynamic_threshold_ttl: "timedelta" = DYNAMIC_THRESHOLD_TTL,
    ) -> "None":
        self.group_metadata: "TTLCache[str, GroupSnapshot]" = TTLCache(
            "group_metadata", group_metadata_ttl, clock
        )
        self.peer_windows: "TTLCache[tuple[str, str], tuple[PeerWindow, ...]]" = (
            TTLCache("peer_windows", peer_windows_ttl, clock)
        )
        self.dynamic_threshold: "TTLCache[str, int]" = TTLCache(
            "dynamic_threshold", dynamic_threshold_ttl, clock
        )

    def evict_group(self, group_id: "str", actor_id: "str | None" = None) -> "None":
        """
        force-evicts one group's metadata and peer windows. With an
        actor id only that actor's peer view is dropped. The threshold
        cache and other groups are left untouched.
        """
        self.group_metadata.invalidate(group_id)
        if actor_id is not None:
            self.peer_windows.invalidate((group_id, actor_id))
        else:
            self.peer_windows.invalidate_where(lambda key: key[0] == group_id)
        logger.debug("group_cache_evicted", group_id=group_id, actor_id=actor_id)

    def sweep(self) -> "int":
        return (
            self.group_metadata.sweep()
            + self.peer_windows.sweep()
            + self.dynamic_threshold.sweep()
        )

    def clear(self) -> "None":
        self.group_metadata.clear()
        self.peer_windows.clear()
        self.dynamic_threshold.clear()
