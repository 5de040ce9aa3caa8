from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from tokenpool.activity import DEFAULT_BOUNDS, ActivityBounds, is_window_active
from tokenpool.models import (
    BurnIndicator,
    BurnRate,
    ConflictSeverity,
    GroupSnapshot,
    GroupStatistics,
    Member,
    MemberStatistics,
    PeerWindow,
    ScheduleConflict,
    Window,
)
from tokenpool.resolver import BurnRateThresholds, ResolvedConfig

GLYPH_ACTIVE = "🟢"
GLYPH_IDLE = "🟡"
GLYPH_OFFLINE = "⚫"

# (label, first hour, last hour exclusive)
_DAY_PERIODS: "tuple[tuple[str, int, int], ...]" = (
    ("morning", 6, 12),
    ("afternoon", 12, 18),
    ("evening", 18, 24),
    ("night", 0, 6),
)


def status_glyph(
    is_active: "bool",
    last_activity: "datetime | None",
    now: "datetime",
    idle_window: "timedelta" = timedelta(hours=1),
) -> "str":
    if is_active:
        return GLYPH_ACTIVE
    if last_activity is not None and now - last_activity < idle_window:
        return GLYPH_IDLE
    return GLYPH_OFFLINE


def describe_preferred_hours(hours: "Iterable[int]") -> "str":
    """
    turns a set of preferred hours into a short description such as
    "morning, evening".
    """
    hour_set = set(hours)
    periods = [
        label
        for label, first, last in _DAY_PERIODS
        if any(first <= h < last for h in hour_set)
    ]
    if not periods:
        return "not set"
    if len(periods) == len(_DAY_PERIODS):
        return "all day"
    return ", ".join(periods)


def conflict_severity(member_count: "int") -> "ConflictSeverity":
    if member_count >= 4:
        return ConflictSeverity.HIGH
    if member_count == 3:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def detect_schedule_conflicts(
    members: "Sequence[Member]",
) -> "list[ScheduleConflict]":
    """
    reports every one-hour slot claimed by at least two members,
    most severe first.
    """
    claims: "dict[int, list[str]]" = {}
    for member in members:
        for hour in sorted(member.preferred_hours):
            claims.setdefault(hour, []).append(member.display_name)

    conflicts = [
        ScheduleConflict(
            hour=hour,
            members=tuple(names),
            severity=conflict_severity(len(names)),
        )
        for hour, names in sorted(claims.items())
        if len(names) >= 2
    ]
    # stable sort keeps hour order within one severity
    conflicts.sort(key=lambda c: c.severity.rank, reverse=True)
    return conflicts


def compute_burn_rate(
    window: "Window | None",
    total_tokens: "int",
    total_cost: "float",
    thresholds: "BurnRateThresholds",
    now: "datetime",
    bounds: "ActivityBounds" = DEFAULT_BOUNDS,
) -> "BurnRate | None":
    """
    computes consumption velocity since the local window started.
    Only defined while that window is active.
    """
    if window is None or not is_window_active(window, now, bounds):
        return None

    elapsed_minutes = (now - window.start_time).total_seconds() / 60
    if elapsed_minutes <= 0:
        return None

    tokens_per_minute = total_tokens / elapsed_minutes
    cost_per_hour = (total_cost / elapsed_minutes) * 60

    indicator = BurnIndicator.NORMAL
    if tokens_per_minute > thresholds.high:
        indicator = BurnIndicator.HIGH
    elif tokens_per_minute > thresholds.moderate:
        indicator = BurnIndicator.MODERATE

    return BurnRate(
        tokens_per_minute=tokens_per_minute,
        cost_per_hour=cost_per_hour,
        indicator=indicator,
    )


class GroupAggregator:
    """
    GroupAggregator merges the actor's local window with the windows
    other members synced remotely, and derives per-member statistics,
    totals, burn rate, schedule conflicts and advisories.

    It holds no state between passes: every call builds a fresh
    GroupStatistics from its inputs.
    """

    def __init__(
        self,
        bounds: "ActivityBounds" = DEFAULT_BOUNDS,
        dominant_share: "float" = 0.4,
        max_advisories: "int" = 4,
        ending_soon: "timedelta" = timedelta(minutes=60),
        projected_overrun: "float" = 1.2,
    ) -> "None":
        self._bounds = bounds
        self._dominant_share = dominant_share
        self._max_advisories = max_advisories
        self._ending_soon = ending_soon
        self._projected_overrun = projected_overrun

    def aggregate(
        self,
        snapshot: "GroupSnapshot",
        actor_id: "str | None",
        local_window: "Window | None",
        peer_windows: "Sequence[PeerWindow]",
        resolved: "ResolvedConfig",
        now: "datetime",
    ) -> "GroupStatistics":
        member_stats = tuple(
            self._local_stats(member, local_window, now)
            if actor_id is not None and member.external_id == actor_id
            else self._peer_stats(member, peer_windows, now)
            for member in snapshot.members
        )

        total_tokens = sum(m.current_tokens for m in member_stats)
        total_cost = sum(m.current_cost for m in member_stats)
        active_count = sum(1 for m in member_stats if m.is_active)

        burn_rate = compute_burn_rate(
            local_window,
            total_tokens,
            total_cost,
            resolved.burn_rate,
            now,
            self._bounds,
        )
        conflicts = tuple(detect_schedule_conflicts(snapshot.members))
        advisories = self.build_advisories(
            member_stats=member_stats,
            total_tokens=total_tokens,
            active_count=active_count,
            burn_rate=burn_rate,
            conflicts=conflicts,
            current_window=local_window,
            resolved=resolved,
            now=now,
        )

        return GroupStatistics(
            group=snapshot.group,
            members=snapshot.members,
            current_window=local_window,
            member_stats=member_stats,
            total_tokens=total_tokens,
            total_cost=total_cost,
            active_count=active_count,
            burn_rate=burn_rate,
            conflicts=conflicts,
            advisories=advisories,
            token_limit=resolved.token_limit,
            generated_at=now,
        )

    def _local_stats(
        self,
        member: "Member",
        window: "Window | None",
        now: "datetime",
    ) -> "MemberStatistics":
        if window is None:
            tokens, cost, active, last_activity = 0, 0.0, False, None
        else:
            tokens = window.total_tokens
            cost = window.cost_usd
            active = is_window_active(window, now, self._bounds)
            last_activity = window.actual_end_time

        return MemberStatistics(
            member_id=member.external_id,
            display_name=member.display_name,
            is_active=active,
            current_tokens=tokens,
            current_cost=cost,
            last_activity=last_activity,
            status_glyph=status_glyph(active, last_activity, now),
            preferred_time=describe_preferred_hours(member.preferred_hours),
        )

    def _peer_stats(
        self,
        member: "Member",
        peer_windows: "Sequence[PeerWindow]",
        now: "datetime",
    ) -> "MemberStatistics":
        own = [w for w in peer_windows if w.actor_id == member.external_id]
        tokens = sum(w.token_counts.total_tokens for w in own)
        cost = sum(w.cost_usd for w in own)
        active = any(w.is_active for w in own)
        last_activity = max((w.updated_at for w in own), default=None)

        return MemberStatistics(
            member_id=member.external_id,
            display_name=member.display_name,
            is_active=active,
            current_tokens=tokens,
            current_cost=cost,
            last_activity=last_activity,
            status_glyph=status_glyph(active, last_activity, now),
            preferred_time=describe_preferred_hours(member.preferred_hours),
        )

    def build_advisories(
        self,
        member_stats: "Sequence[MemberStatistics]",
        total_tokens: "int",
        active_count: "int",
        burn_rate: "BurnRate | None",
        conflicts: "Sequence[ScheduleConflict]",
        current_window: "Window | None",
        resolved: "ResolvedConfig",
        now: "datetime",
    ) -> "tuple[str, ...]":
        """
        builds advisory lines in fixed priority order and keeps the
        first max_advisories of them. The moderate burn-rate hint and
        the end-of-window projection rank below every other advisory.
        """
        advisories: "list[str]" = []

        if burn_rate is not None and burn_rate.indicator is BurnIndicator.HIGH:
            advisories.append(
                f"⚠️ Burn rate is high ({burn_rate.tokens_per_minute:,.0f} tokens/min), "
                "pause non-urgent work"
            )

        if active_count > 1:
            advisories.append(
                f"👥 {active_count} members are active at the same time, "
                "coordinate to avoid overlap"
            )

        if total_tokens > 0:
            dominant = next(
                (
                    m
                    for m in member_stats
                    if m.current_tokens > total_tokens * self._dominant_share
                ),
                None,
            )
            if dominant is not None:
                share = dominant.current_tokens / total_tokens * 100
                advisories.append(
                    f"📊 {dominant.display_name} accounts for {share:.0f}% of usage, "
                    "consider pacing"
                )

        if conflicts:
            top = conflicts[0]
            advisories.append(
                f"⏰ {top.time_slot} is a peak slot for {', '.join(top.members)}, "
                "coordinate schedules"
            )

        if current_window is not None:
            remaining = current_window.end_time - now
            if timedelta(0) < remaining < self._ending_soon:
                minutes = round(remaining.total_seconds() / 60)
                advisories.append(
                    f"⏳ Window ends in about {minutes} min, plan ahead"
                )

        if resolved.token_limit > 0:
            usage = total_tokens / resolved.token_limit
            if usage > resolved.warning_levels.critical:
                advisories.append(
                    f"🚨 Token limit exceeded ({usage * 100:.0f}% used), "
                    "stop non-essential usage"
                )
            elif usage > resolved.warning_levels.level1:
                advisories.append(
                    f"📈 {usage * 100:.0f}% of the token limit used, "
                    "approaching the cap"
                )

        if burn_rate is not None and burn_rate.indicator is BurnIndicator.MODERATE:
            advisories.append(
                f"⚡ Burn rate is elevated ({burn_rate.tokens_per_minute:,.0f} tokens/min), "
                "keep an eye on the pace"
            )

        if (
            burn_rate is not None
            and current_window is not None
            and resolved.token_limit > 0
        ):
            remaining_minutes = max(
                (current_window.end_time - now).total_seconds() / 60, 0.0
            )
            projected = total_tokens + burn_rate.tokens_per_minute * remaining_minutes
            if projected > resolved.token_limit * self._projected_overrun:
                advisories.append(
                    f"🎯 At this pace the window ends at {projected / resolved.token_limit * 100:.0f}% "
                    "of the token limit, slow down"
                )

        return tuple(advisories[: self._max_advisories])
