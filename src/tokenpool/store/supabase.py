from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx
import structlog

from tokenpool.errors import StoreError
from tokenpool.models import Group, Member, PeerWindow, TokenCounts, Window

logger = structlog.get_logger()

REST_PATH = "/rest/v1"

GROUPS_TABLE = "groups"
MEMBERS_TABLE = "group_members"
WINDOWS_TABLE = "usage_windows"
LIVE_STATUS_TABLE = "group_live_status"
SYSTEM_CONFIG_TABLE = "system_config"

# usage_windows rows are unique on this triple and always upserted
WINDOW_CONFLICT_COLUMNS = "group_id,actor_external_id,window_id"

T = TypeVar("T")


def parse_timestamp(value: "str") -> "datetime":
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_token_counts(raw: "dict[str, Any]") -> "TokenCounts":
    return TokenCounts(
        input_tokens=int(raw.get("input_tokens", 0)),
        output_tokens=int(raw.get("output_tokens", 0)),
        cache_creation_tokens=int(raw.get("cache_creation_tokens", 0)),
        cache_read_tokens=int(raw.get("cache_read_tokens", 0)),
    )


def token_counts_to_json(counts: "TokenCounts") -> "dict[str, int]":
    return {
        "input_tokens": counts.input_tokens,
        "output_tokens": counts.output_tokens,
        "cache_creation_tokens": counts.cache_creation_tokens,
        "cache_read_tokens": counts.cache_read_tokens,
    }


def parse_group(row: "dict[str, Any]") -> "Group":
    created_at = row.get("created_at")
    return Group(
        id=str(row["id"]),
        name=str(row["name"]),
        join_code=str(row["join_code"]),
        created_at=parse_timestamp(created_at) if created_at else None,
        settings=dict(row.get("settings") or {}),
    )


def parse_member(row: "dict[str, Any]") -> "Member":
    settings = row.get("settings") or {}
    hours = settings.get("preferred_hours") or []
    joined_at = row.get("joined_at")
    return Member(
        id=str(row["id"]),
        group_id=str(row["group_id"]),
        display_name=str(row["display_name"]),
        external_id=str(row["external_id"]),
        is_active=bool(row.get("is_active", True)),
        preferred_hours=frozenset(int(h) for h in hours if 0 <= int(h) <= 23),
        timezone=settings.get("timezone"),
        joined_at=parse_timestamp(joined_at) if joined_at else None,
    )


def parse_peer_window(row: "dict[str, Any]") -> "PeerWindow":
    return PeerWindow(
        group_id=str(row["group_id"]),
        actor_id=str(row["actor_external_id"]),
        window_id=str(row["window_id"]),
        start_time=parse_timestamp(row["start_time"]),
        end_time=parse_timestamp(row["end_time"]),
        is_active=bool(row.get("is_active", False)),
        token_counts=parse_token_counts(row.get("token_counts") or {}),
        cost_usd=float(row.get("cost_usd") or 0.0),
        models=tuple(row.get("models") or ()),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _first_row(
    rows: "Any",
    parse: "Callable[[dict[str, Any]], T]",
    kind: "str",
) -> "T":
    if not rows:
        raise StoreError(f"{kind} request returned no row")
    try:
        return parse(rows[0])
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreError(f"malformed {kind} row: {exc}") from exc


class SupabaseStore:
    """
    SupabaseStore implements the RemoteStore protocol on top of the
    PostgREST API exposed by Supabase. Every failure, transport or
    status or row shape, is raised as StoreError.
    """

    def __init__(
        self,
        url: "str",
        api_key: "str",
        timeout: "float" = 10.0,
    ) -> "None":
        self._base_url = url.rstrip("/") + REST_PATH
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    @property
    def base_url(self) -> "str":
        return self._base_url

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def _request(
        self,
        method: "str",
        table: "str",
        params: "dict[str, str] | None" = None,
        json: "object | None" = None,
        prefer: "str | None" = None,
    ) -> "Any":
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StoreError(
                f"{method} {table} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {table} failed: {exc}") from exc

        logger.debug("store_request_done", method=method, table=table)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise StoreError(f"{method} {table} returned a non-JSON body") from exc

    async def fetch_group(self, group_id: "str") -> "Group":
        rows = await self._request(
            "GET",
            GROUPS_TABLE,
            params={"id": f"eq.{group_id}", "select": "*"},
        )
        if not rows:
            raise StoreError(f"group {group_id} not found")
        try:
            return parse_group(rows[0])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"malformed group row: {exc}") from exc

    async def fetch_members(self, group_id: "str") -> "list[Member]":
        rows = await self._request(
            "GET",
            MEMBERS_TABLE,
            params={
                "group_id": f"eq.{group_id}",
                "is_active": "eq.true",
                "order": "joined_at.asc",
                "select": "*",
            },
        )
        try:
            return [parse_member(row) for row in rows or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"malformed member row: {exc}") from exc

    async def _insert_member(
        self,
        group_id: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None",
    ) -> "Member":
        rows = await self._request(
            "POST",
            MEMBERS_TABLE,
            json={
                "group_id": group_id,
                "display_name": display_name,
                "external_id": actor_id,
                "is_active": True,
                "settings": {"timezone": timezone} if timezone else {},
            },
            prefer="return=representation",
        )
        return _first_row(rows, parse_member, "member")

    async def create_group(
        self,
        name: "str",
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]":
        """
        inserts the group and its creator as the first member. When the
        member insert fails the group row is deleted again.
        """
        rows = await self._request(
            "POST",
            GROUPS_TABLE,
            json={"name": name, "join_code": join_code, "settings": {}},
            prefer="return=representation",
        )
        group = _first_row(rows, parse_group, "group")

        try:
            member = await self._insert_member(group.id, display_name, actor_id, timezone)
        except StoreError:
            try:
                await self._request(
                    "DELETE", GROUPS_TABLE, params={"id": f"eq.{group.id}"}
                )
            except StoreError as exc:
                logger.warning("group_rollback_failed", group_id=group.id, error=str(exc))
            raise
        return group, member

    async def join_group(
        self,
        join_code: "str",
        display_name: "str",
        actor_id: "str",
        timezone: "str | None" = None,
    ) -> "tuple[Group, Member]":
        """
        adds the actor to the group with this join code. A member who
        left before is reactivated instead of inserted twice.
        """
        rows = await self._request(
            "GET",
            GROUPS_TABLE,
            params={"join_code": f"eq.{join_code}", "select": "*"},
        )
        if not rows:
            raise StoreError(f"no group with join code {join_code}")
        group = _first_row(rows, parse_group, "group")

        member_filter = {
            "group_id": f"eq.{group.id}",
            "external_id": f"eq.{actor_id}",
        }
        rows = await self._request(
            "GET", MEMBERS_TABLE, params={**member_filter, "select": "*"}
        )
        if not rows:
            member = await self._insert_member(group.id, display_name, actor_id, timezone)
            return group, member

        member = _first_row(rows, parse_member, "member")
        if not member.is_active:
            rows = await self._request(
                "PATCH",
                MEMBERS_TABLE,
                params=member_filter,
                json={"is_active": True},
                prefer="return=representation",
            )
            member = _first_row(rows, parse_member, "member")
        return group, member

    async def leave_group(self, group_id: "str", actor_id: "str") -> "None":
        """
        marks the actor's membership inactive. The row and its synced
        windows are kept.
        """
        rows = await self._request(
            "PATCH",
            MEMBERS_TABLE,
            params={
                "group_id": f"eq.{group_id}",
                "external_id": f"eq.{actor_id}",
            },
            json={"is_active": False},
            prefer="return=representation",
        )
        if not rows:
            raise StoreError(f"{actor_id} is not a member of group {group_id}")

    async def fetch_actor_groups(
        self, actor_id: "str"
    ) -> "list[tuple[Group, Member]]":
        rows = await self._request(
            "GET",
            MEMBERS_TABLE,
            params={
                "external_id": f"eq.{actor_id}",
                "is_active": "eq.true",
                "select": f"*,{GROUPS_TABLE}(*)",
            },
        )
        try:
            return [
                (parse_group(row[GROUPS_TABLE]), parse_member(row))
                for row in rows or []
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"malformed membership row: {exc}") from exc

    async def fetch_peer_windows(
        self,
        group_id: "str",
        exclude_actor_id: "str | None" = None,
    ) -> "list[PeerWindow]":
        """
        fetches the active windows synced by the group's members,
        newest first.
        """
        params = {
            "group_id": f"eq.{group_id}",
            "is_active": "eq.true",
            "order": "start_time.desc",
            "select": "*",
        }
        if exclude_actor_id:
            params["actor_external_id"] = f"neq.{exclude_actor_id}"

        rows = await self._request("GET", WINDOWS_TABLE, params=params)
        try:
            return [parse_peer_window(row) for row in rows or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"malformed window row: {exc}") from exc

    async def upsert_window(
        self,
        group_id: "str",
        actor_id: "str",
        window: "Window",
        is_active: "bool",
    ) -> "PeerWindow":
        """
        pushes a local window. Rows are unique on (group, actor, window)
        so pushing the same window twice updates it in place.
        """
        payload = {
            "group_id": group_id,
            "actor_external_id": actor_id,
            "window_id": window.id,
            "start_time": window.start_time.isoformat(),
            "end_time": window.end_time.isoformat(),
            "is_active": is_active,
            "token_counts": token_counts_to_json(window.token_counts),
            "cost_usd": window.cost_usd,
            "models": list(window.models),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        rows = await self._request(
            "POST",
            WINDOWS_TABLE,
            params={"on_conflict": WINDOW_CONFLICT_COLUMNS},
            json=payload,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise StoreError(f"upsert of window {window.id} returned no row")
        try:
            return parse_peer_window(rows[0])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"malformed window row: {exc}") from exc

    async def upsert_live_status(
        self,
        group_id: "str",
        status: "dict[str, object]",
    ) -> "None":
        await self._request(
            "POST",
            LIVE_STATUS_TABLE,
            params={"on_conflict": "group_id"},
            json={"group_id": group_id, **status},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def fetch_system_config(self) -> "dict[str, object]":
        rows = await self._request(
            "GET",
            SYSTEM_CONFIG_TABLE,
            params={"select": "key,value"},
        )
        config: "dict[str, object]" = {}
        for row in rows or []:
            if isinstance(row, dict) and "key" in row:
                config[str(row["key"])] = row.get("value")
        return config

    async def upsert_system_config(
        self,
        key: "str",
        value: "object",
        description: "str | None" = None,
    ) -> "None":
        await self._request(
            "POST",
            SYSTEM_CONFIG_TABLE,
            params={"on_conflict": "key"},
            json={"key": key, "value": value, "description": description},
            prefer="resolution=merge-duplicates,return=minimal",
        )
