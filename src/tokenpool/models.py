from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True, slots=True)
class TokenCounts:
    """
    TokenCounts holds the four non-negative token counters
    tracked for a window.
    """

    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_creation_tokens: "int" = 0
    cache_read_tokens: "int" = 0

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        return TokenCounts(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens
            + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )


@dataclass(frozen=True, slots=True)
class Window:
    """
    Window represents one fixed-length billing block built from
    locally observed activity. It is rebuilt on every pass and never
    mutated; whether it is active is computed, see tokenpool.activity.
    """

    id: "str"
    start_time: "datetime"
    # always start_time + window duration
    end_time: "datetime"
    # timestamp of the last observed activity, may lag or slightly
    # exceed end_time because of clock skew
    actual_end_time: "datetime | None"
    token_counts: "TokenCounts" = field(default_factory=TokenCounts)
    cost_usd: "float" = 0.0
    models: "tuple[str, ...]" = ()
    # gap windows cover silent periods between real windows
    is_gap: "bool" = False

    @property
    def total_tokens(self) -> "int":
        return self.token_counts.total_tokens


@dataclass(frozen=True, slots=True)
class Group:
    id: "str"
    name: "str"
    # 6 chars, uppercase letters and digits
    join_code: "str"
    created_at: "datetime | None" = None
    settings: "dict[str, object]" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Member:
    """
    Member is one participant of a group, as stored remotely.
    external_id is the actor id the member syncs its windows under.
    """

    id: "str"
    group_id: "str"
    display_name: "str"
    external_id: "str"
    is_active: "bool" = True
    preferred_hours: "frozenset[int]" = frozenset()
    timezone: "str | None" = None
    joined_at: "datetime | None" = None


@dataclass(frozen=True, slots=True)
class GroupSnapshot:
    """
    group record plus its active member list, cached as one unit.
    """

    group: "Group"
    members: "tuple[Member, ...]"


@dataclass(frozen=True, slots=True)
class PeerWindow:
    """
    PeerWindow is a window another member pushed to the
    remote store (one usage_windows row).
    """

    group_id: "str"
    actor_id: "str"
    window_id: "str"
    start_time: "datetime"
    end_time: "datetime"
    is_active: "bool"
    token_counts: "TokenCounts"
    cost_usd: "float"
    models: "tuple[str, ...]"
    updated_at: "datetime"


class BurnIndicator(str, Enum):
    HIGH = "HIGH"
    MODERATE = "MODERATE"
    NORMAL = "NORMAL"


@dataclass(frozen=True, slots=True)
class BurnRate:
    tokens_per_minute: "float"
    cost_per_hour: "float"
    indicator: "BurnIndicator"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> "int":
        return {"low": 1, "medium": 2, "high": 3}[self.value]


@dataclass(frozen=True, slots=True)
class ScheduleConflict:
    # hour of day, 0-23
    hour: "int"
    # display names, in member order
    members: "tuple[str, ...]"
    severity: "ConflictSeverity"

    @property
    def time_slot(self) -> "str":
        return f"{self.hour:02d}:00-{(self.hour + 1) % 24:02d}:00"


@dataclass(frozen=True, slots=True)
class MemberStatistics:
    member_id: "str"
    display_name: "str"
    is_active: "bool"
    current_tokens: "int"
    current_cost: "float"
    last_activity: "datetime | None"
    status_glyph: "str"
    preferred_time: "str" = ""


@dataclass(frozen=True, slots=True)
class GroupStatistics:
    """
    GroupStatistics is the immutable snapshot produced by one
    aggregation pass and handed to the display layer.
    """

    group: "Group"
    members: "tuple[Member, ...]"
    current_window: "Window | None"
    member_stats: "tuple[MemberStatistics, ...]"
    total_tokens: "int"
    total_cost: "float"
    active_count: "int"
    burn_rate: "BurnRate | None"
    conflicts: "tuple[ScheduleConflict, ...]"
    advisories: "tuple[str, ...]"
    token_limit: "int"
    generated_at: "datetime"
