import asyncio
import re
import secrets
from types import TracebackType

import structlog

from tokenpool.activity import ActivityBounds, is_window_active
from tokenpool.aggregator import GroupAggregator
from tokenpool.cache import Clock, TieredCache, utc_now
from tokenpool.errors import StoreError
from tokenpool.models import (
    Group,
    GroupSnapshot,
    GroupStatistics,
    Member,
    PeerWindow,
    Window,
)
from tokenpool.resolver import ConfigResolver
from tokenpool.result import Err, Ok
from tokenpool.retry import with_retry
from tokenpool.selector import WindowSelector
from tokenpool.store.base import RemoteStore

logger = structlog.get_logger()

# no 0/O or 1/I, codes are typed by hand
JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6

_JOIN_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")


def generate_join_code() -> "str":
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def normalize_join_code(code: "str") -> "str":
    """
    upper-cases and trims a join code typed by a user. Raises
    ValueError unless it is 6 letters or digits.
    """
    normalized = code.strip().upper()
    if not _JOIN_CODE_RE.match(normalized):
        raise ValueError(f"invalid join code: {code!r}")
    return normalized


def live_status_payload(stats: "GroupStatistics") -> "dict[str, object]":
    """
    projects a statistics snapshot onto a group_live_status row.
    """
    burn_rate = None
    if stats.burn_rate is not None:
        burn_rate = {
            "tokens_per_minute": stats.burn_rate.tokens_per_minute,
            "cost_per_hour": stats.burn_rate.cost_per_hour,
            "indicator": stats.burn_rate.indicator.value,
        }

    return {
        "active_window_id": (
            stats.current_window.id if stats.current_window is not None else None
        ),
        "active_members": [
            {
                "member_id": m.member_id,
                "display_name": m.display_name,
                "is_active": m.is_active,
                "current_tokens": m.current_tokens,
                "last_activity": (
                    m.last_activity.isoformat() if m.last_activity else None
                ),
            }
            for m in stats.member_stats
        ],
        "total_tokens": stats.total_tokens,
        "total_cost": stats.total_cost,
        "burn_rate": burn_rate,
        "updated_at": stats.generated_at.isoformat(),
    }


class GroupUsageService:
    """
    GroupUsageService is the entry point used by the dashboard and the
    sync loop. It owns the window selector, the tiered caches and the
    config resolver; nothing is shared through module globals, so
    several instances can live side by side.

    Use it as an async context manager so the store and pricing HTTP
    clients are closed on every exit path:

        async with GroupUsageService(...) as service:
            result = await service.get_group_statistics(group_id, actor_id)
    """

    def __init__(
        self,
        store: "RemoteStore",
        selector: "WindowSelector",
        resolver: "ConfigResolver",
        caches: "TieredCache",
        aggregator: "GroupAggregator | None" = None,
        exclude_self_from_peers: "bool" = True,
        clock: "Clock" = utc_now,
        retry_attempts: "int" = 3,
        retry_delay: "float" = 1.0,
    ) -> "None":
        self._store = store
        self._selector = selector
        self._resolver = resolver
        self._caches = caches
        self._aggregator = aggregator or GroupAggregator(bounds=selector.bounds)
        self._exclude_self = exclude_self_from_peers
        self._clock = clock
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay

    @property
    def caches(self) -> "TieredCache":
        return self._caches

    @property
    def bounds(self) -> "ActivityBounds":
        return self._selector.bounds

    async def __aenter__(self) -> "GroupUsageService":
        return self

    async def __aexit__(
        self,
        exc_type: "type[BaseException] | None",
        exc: "BaseException | None",
        tb: "TracebackType | None",
    ) -> "None":
        await self.close()

    async def close(self) -> "None":
        """
        releases the store and pricing clients. Safe to call twice.
        """
        try:
            await self._store.close()
        finally:
            await self._resolver.close()

    async def get_current_window(self, actor_id: "str | None" = None) -> "Window | None":
        """
        returns the actor's current local window. Local failures are
        logged and degrade to no window.
        """
        result = await self._selector.select(actor_id)
        if isinstance(result, Err):
            logger.warning("current_window_unavailable", actor_id=actor_id, error=str(result))
            return None
        return result.value

    async def get_group_snapshot(
        self,
        group_id: "str",
        stop_event: "asyncio.Event | None" = None,
    ) -> "Ok[GroupSnapshot] | Err[StoreError]":
        cached = self._caches.group_metadata.get(group_id)
        if cached is not None:
            return Ok(cached)

        async def _fetch() -> "GroupSnapshot":
            group = await self._store.fetch_group(group_id)
            members = await self._store.fetch_members(group_id)
            return GroupSnapshot(group=group, members=tuple(members))

        result = await with_retry(
            _fetch,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            stop_event=stop_event,
            op_name="fetch_group",
        )
        if isinstance(result, Ok):
            self._caches.group_metadata.set(group_id, result.value)
        return result

    async def get_peer_windows(
        self,
        group_id: "str",
        actor_id: "str | None",
        stop_event: "asyncio.Event | None" = None,
    ) -> "Ok[tuple[PeerWindow, ...]] | Err[StoreError]":
        key = (group_id, actor_id or "")
        cached = self._caches.peer_windows.get(key)
        if cached is not None:
            return Ok(cached)

        exclude = actor_id if self._exclude_self else None

        async def _fetch() -> "tuple[PeerWindow, ...]":
            return tuple(await self._store.fetch_peer_windows(group_id, exclude))

        result = await with_retry(
            _fetch,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            stop_event=stop_event,
            op_name="fetch_peer_windows",
        )
        if isinstance(result, Ok):
            self._caches.peer_windows.set(key, result.value)
        return result

    async def get_group_statistics(
        self,
        group_id: "str",
        actor_id: "str | None",
        stop_event: "asyncio.Event | None" = None,
    ) -> "Ok[GroupStatistics] | Err[StoreError]":
        """
        builds one consistent statistics snapshot. Remote failures fail
        the whole call, a missing local window does not. Setting
        stop_event cuts the retry waits of the remote reads short.
        """
        snapshot = await self.get_group_snapshot(group_id, stop_event)
        if isinstance(snapshot, Err):
            return snapshot

        peers = await self.get_peer_windows(group_id, actor_id, stop_event)
        if isinstance(peers, Err):
            return peers

        local_window = None
        if actor_id is not None:
            local_window = await self.get_current_window(actor_id)

        resolved = await self._resolver.resolve()
        stats = self._aggregator.aggregate(
            snapshot=snapshot.value,
            actor_id=actor_id,
            local_window=local_window,
            peer_windows=peers.value,
            resolved=resolved,
            now=self._clock(),
        )
        return Ok(stats)

    async def create_group(
        self,
        name: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "Ok[tuple[Group, Member]] | Err[StoreError]":
        """
        creates a group with a fresh join code and makes the actor its
        first member.
        """
        if not name.strip():
            raise ValueError("group name must not be empty")
        if not display_name.strip():
            raise ValueError("display name must not be empty")
        join_code = generate_join_code()

        async def _create() -> "tuple[Group, Member]":
            return await self._store.create_group(
                name.strip(), join_code, display_name.strip(), actor_id, timezone
            )

        result = await with_retry(
            _create,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            op_name="create_group",
        )
        if isinstance(result, Ok):
            group, _ = result.value
            self._caches.evict_group(group.id)
            logger.info("group_created", group_id=group.id, join_code=group.join_code)
        return result

    async def join_group(
        self,
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "Ok[tuple[Group, Member]] | Err[StoreError]":
        code = normalize_join_code(join_code)
        if not display_name.strip():
            raise ValueError("display name must not be empty")

        async def _join() -> "tuple[Group, Member]":
            return await self._store.join_group(
                code, display_name.strip(), actor_id, timezone
            )

        result = await with_retry(
            _join,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            op_name="join_group",
        )
        if isinstance(result, Ok):
            group, _ = result.value
            self._caches.evict_group(group.id)
            logger.info("group_joined", group_id=group.id, actor_id=actor_id)
        return result

    async def leave_group(
        self, group_id: "str", actor_id: "str"
    ) -> "Ok[None] | Err[StoreError]":
        """
        deactivates the actor's membership. The group's cached metadata
        and peer windows are evicted so the next snapshot drops the actor.
        """

        async def _leave() -> "None":
            await self._store.leave_group(group_id, actor_id)

        result = await with_retry(
            _leave,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            op_name="leave_group",
        )
        if isinstance(result, Ok):
            self._caches.evict_group(group_id)
            logger.info("group_left", group_id=group_id, actor_id=actor_id)
        return result

    async def get_actor_groups(
        self, actor_id: "str"
    ) -> "Ok[tuple[tuple[Group, Member], ...]] | Err[StoreError]":
        async def _fetch() -> "tuple[tuple[Group, Member], ...]":
            return tuple(await self._store.fetch_actor_groups(actor_id))

        return await with_retry(
            _fetch,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            op_name="fetch_actor_groups",
        )

    async def resolve_token_threshold(self) -> "int":
        return await self._resolver.resolve_token_threshold()

    def clear_cache(
        self,
        group_id: "str | None" = None,
        actor_id: "str | None" = None,
    ) -> "None":
        """
        without arguments everything is dropped, including the
        memoized local window and the thresholds. With a group id only
        that group's metadata and peer windows are evicted.
        """
        if group_id is not None:
            self._caches.evict_group(group_id, actor_id)
            return

        if actor_id is not None:
            self._selector.clear_cache()
            self._caches.peer_windows.invalidate_where(lambda key: key[1] == actor_id)
            return

        self._caches.clear()
        self._selector.clear_cache()
        self._resolver.clear_cache()

    async def push_window(
        self,
        group_id: "str",
        actor_id: "str",
        window: "Window",
        stop_event: "asyncio.Event | None" = None,
    ) -> "Ok[PeerWindow] | Err[StoreError]":
        """
        upserts the actor's window into the remote store, retrying a
        few times before giving up.
        """
        active = is_window_active(window, self._clock(), self._selector.bounds)

        async def _upsert() -> "PeerWindow":
            return await self._store.upsert_window(group_id, actor_id, window, active)

        return await with_retry(
            _upsert,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            stop_event=stop_event,
            op_name="upsert_window",
        )

    async def publish_live_status(
        self,
        stats: "GroupStatistics",
        stop_event: "asyncio.Event | None" = None,
    ) -> "Ok[None] | Err[StoreError]":
        payload = live_status_payload(stats)

        async def _upsert() -> "None":
            await self._store.upsert_live_status(stats.group.id, payload)

        return await with_retry(
            _upsert,
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            stop_event=stop_event,
            op_name="upsert_live_status",
        )
