from typing import Protocol, Sequence

from tokenpool.models import Group, Member, PeerWindow, Window


class RemoteStore(Protocol):
    """
    RemoteStore stands as the protocol every remote table store
    must satisfy.

    Implementations raise StoreError on any connectivity, status or
    row-shape problem; retries are left to the caller.
    """

    async def fetch_group(self, group_id: "str") -> "Group": ...

    async def fetch_members(self, group_id: "str") -> "Sequence[Member]": ...

    async def create_group(
        self,
        name: "str",
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]": ...

    async def join_group(
        self,
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]": ...

    async def leave_group(self, group_id: "str", actor_id: "str") -> "None": ...

    async def fetch_actor_groups(
        self, actor_id: "str"
    ) -> "Sequence[tuple[Group, Member]]": ...

    async def fetch_peer_windows(
        self,
        group_id: "str",
        exclude_actor_id: "str | None" = None,
    ) -> "Sequence[PeerWindow]": ...

    async def upsert_window(
        self,
        group_id: "str",
        actor_id: "str",
        window: "Window",
        is_active: "bool",
    ) -> "PeerWindow": ...

    async def upsert_live_status(
        self,
        group_id: "str",
        status: "dict[str, object]",
    ) -> "None": ...

    async def fetch_system_config(self) -> "dict[str, object]": ...

    async def upsert_system_config(
        self,
        key: "str",
        value: "object",
        description: "str | None" = None,
    ) -> "None": ...

    async def close(self) -> "None": ...
