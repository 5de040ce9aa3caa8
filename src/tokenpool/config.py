import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from tokenpool.activity import ActivityBounds
from tokenpool.pricing import LITELLM_PRICING_URL

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_float(name: "str", default: "float") -> "float":
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_bool(name: "str", default: "bool") -> "bool":
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _default_data_dirs() -> "list[Path]":
    return [Path.home() / ".claude" / "projects"]


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186", empty disables the metrics endpoint
    listen_address: "str" = ""
    # loop intervals in seconds
    refresh_interval: "int" = 5
    sync_interval: "int" = 30
    log_level: "str" = "info"
    log_json: "bool" = False
    sync_enabled: "bool" = True
    publish_live_status: "bool" = False

    supabase_url: "str" = ""
    supabase_key: "str" = ""
    group_id: "str" = ""
    actor_id: "str" = ""

    data_dirs: "list[Path]" = field(default_factory=_default_data_dirs)
    window_hours: "float" = 5
    activity_grace_minutes: "float" = 120
    activity_trailing_minutes: "float" = 30
    exclude_self_from_peers: "bool" = True

    pricing_url: "str" = LITELLM_PRICING_URL
    offline_pricing: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        """
        reads TOKENPOOL_* variables. Invalid values raise ValueError.
        TOKENPOOL_DATA_DIR may list several directories separated by
        os.pathsep.
        """
        data_dir = os.environ.get("TOKENPOOL_DATA_DIR", "")
        data_dirs = [
            Path(p).expanduser() for p in data_dir.split(os.pathsep) if p.strip()
        ]
        return cls(
            supabase_url=os.environ.get("TOKENPOOL_SUPABASE_URL", ""),
            supabase_key=os.environ.get("TOKENPOOL_SUPABASE_KEY", ""),
            group_id=os.environ.get("TOKENPOOL_GROUP_ID", ""),
            actor_id=os.environ.get("TOKENPOOL_ACTOR_ID", ""),
            data_dirs=data_dirs or _default_data_dirs(),
            window_hours=_env_float("TOKENPOOL_WINDOW_HOURS", 5),
            activity_grace_minutes=_env_float("TOKENPOOL_ACTIVITY_GRACE_MINUTES", 120),
            activity_trailing_minutes=_env_float(
                "TOKENPOOL_ACTIVITY_TRAILING_MINUTES", 30
            ),
            exclude_self_from_peers=_env_bool("TOKENPOOL_EXCLUDE_SELF_FROM_PEERS", True),
            pricing_url=os.environ.get("TOKENPOOL_PRICING_URL", "") or LITELLM_PRICING_URL,
            offline_pricing=os.environ.get("TOKENPOOL_OFFLINE_PRICING", ""),
        )

    @property
    def remote_enabled(self) -> "bool":
        return bool(self.supabase_url and self.supabase_key)

    @property
    def window_duration(self) -> "timedelta":
        return timedelta(hours=self.window_hours)

    @property
    def activity_bounds(self) -> "ActivityBounds":
        return ActivityBounds(
            grace=timedelta(minutes=self.activity_grace_minutes),
            trailing=timedelta(minutes=self.activity_trailing_minutes),
        )

    def missing(self) -> "list[str]":
        """
        names the required environment variables that are not set.
        """
        required = {
            "TOKENPOOL_SUPABASE_URL": self.supabase_url,
            "TOKENPOOL_SUPABASE_KEY": self.supabase_key,
            "TOKENPOOL_GROUP_ID": self.group_id,
            "TOKENPOOL_ACTOR_ID": self.actor_id,
        }
        return [name for name, value in required.items() if not value]
