from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from tokenpool.errors import StoreError
from tokenpool.models import Group, Member, PeerWindow, Window

START = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """
    A settable clock, advanced explicitly by tests.
    """

    def __init__(self, now: "datetime" = START) -> "None":
        self.now = now

    def __call__(self) -> "datetime":
        return self.now

    def advance(self, **kwargs: "float") -> "None":
        self.now += timedelta(**kwargs)


class FakeStore:
    """
    An in-memory RemoteStore. Method names listed in fail raise
    StoreError; calls counts every invocation.
    """

    def __init__(self, clock: "FakeClock") -> "None":
        self._clock = clock
        self.groups: "dict[str, Group]" = {}
        self.members: "dict[str, list[Member]]" = {}
        self.windows: "dict[tuple[str, str, str], PeerWindow]" = {}
        self.live_status: "dict[str, dict[str, object]]" = {}
        self.system_config: "dict[str, object]" = {}
        self.fail: "set[str]" = set()
        self.calls: "Counter[str]" = Counter()
        self.closed = False

    def _record(self, name: "str") -> "None":
        self.calls[name] += 1
        if name in self.fail:
            raise StoreError(f"{name} unavailable")

    def add_group(self, group: "Group", members: "list[Member]") -> "None":
        self.groups[group.id] = group
        self.members[group.id] = members

    async def fetch_group(self, group_id: "str") -> "Group":
        self._record("fetch_group")
        if group_id not in self.groups:
            raise StoreError(f"group {group_id} not found")
        return self.groups[group_id]

    async def fetch_members(self, group_id: "str") -> "list[Member]":
        self._record("fetch_members")
        return [m for m in self.members.get(group_id, []) if m.is_active]

    def _new_member(
        self,
        group_id: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None",
    ) -> "Member":
        member = Member(
            id=f"m-{group_id}-{actor_id}",
            group_id=group_id,
            display_name=display_name,
            external_id=actor_id,
            timezone=timezone,
            joined_at=self._clock(),
        )
        self.members.setdefault(group_id, []).append(member)
        return member

    async def create_group(
        self,
        name: "str",
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]":
        self._record("create_group")
        group = Group(
            id=f"g{len(self.groups) + 1}",
            name=name,
            join_code=join_code,
            created_at=self._clock(),
        )
        self.groups[group.id] = group
        return group, self._new_member(group.id, display_name, actor_id, timezone)

    async def join_group(
        self,
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]":
        self._record("join_group")
        group = next((g for g in self.groups.values() if g.join_code == join_code), None)
        if group is None:
            raise StoreError(f"no group with join code {join_code}")

        members = self.members.setdefault(group.id, [])
        for i, member in enumerate(members):
            if member.external_id == actor_id:
                members[i] = replace(member, is_active=True)
                return group, members[i]
        return group, self._new_member(group.id, display_name, actor_id, timezone)

    async def leave_group(self, group_id: "str", actor_id: "str") -> "None":
        self._record("leave_group")
        members = self.members.get(group_id, [])
        for i, member in enumerate(members):
            if member.external_id == actor_id:
                members[i] = replace(member, is_active=False)
                return
        raise StoreError(f"{actor_id} is not a member of group {group_id}")

    async def fetch_actor_groups(self, actor_id: "str") -> "list[tuple[Group, Member]]":
        self._record("fetch_actor_groups")
        return [
            (self.groups[group_id], member)
            for group_id, members in self.members.items()
            for member in members
            if member.external_id == actor_id and member.is_active
        ]

    async def fetch_peer_windows(
        self,
        group_id: "str",
        exclude_actor_id: "str | None" = None,
    ) -> "list[PeerWindow]":
        self._record("fetch_peer_windows")
        rows = [
            w
            for (g, actor, _), w in self.windows.items()
            if g == group_id and w.is_active and actor != exclude_actor_id
        ]
        return sorted(rows, key=lambda w: w.start_time, reverse=True)

    async def upsert_window(
        self,
        group_id: "str",
        actor_id: "str",
        window: "Window",
        is_active: "bool",
    ) -> "PeerWindow":
        self._record("upsert_window")
        row = PeerWindow(
            group_id=group_id,
            actor_id=actor_id,
            window_id=window.id,
            start_time=window.start_time,
            end_time=window.end_time,
            is_active=is_active,
            token_counts=window.token_counts,
            cost_usd=window.cost_usd,
            models=window.models,
            updated_at=self._clock(),
        )
        self.windows[(group_id, actor_id, window.id)] = row
        return row

    async def upsert_live_status(
        self,
        group_id: "str",
        status: "dict[str, object]",
    ) -> "None":
        self._record("upsert_live_status")
        self.live_status[group_id] = status

    async def fetch_system_config(self) -> "dict[str, object]":
        self._record("fetch_system_config")
        return dict(self.system_config)

    async def upsert_system_config(
        self,
        key: "str",
        value: "object",
        description: "str | None" = None,
    ) -> "None":
        self._record("upsert_system_config")
        self.system_config[key] = value

    async def close(self) -> "None":
        self.closed = True


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()


@pytest.fixture()
def store(clock: "FakeClock") -> "FakeStore":
    return FakeStore(clock)
