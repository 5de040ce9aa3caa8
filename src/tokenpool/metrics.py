from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from tokenpool.models import GroupStatistics


class MetricsUpdater:
    """
    applies GroupStatistics snapshots and loop outcomes to Prometheus
    metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._group_tokens: "Gauge" = Gauge(
            "tokenpool_group_tokens",
            "Tokens used by the group in the current window",
            ["group"],
            registry=registry,
        )
        self._group_cost: "Gauge" = Gauge(
            "tokenpool_group_cost_usd",
            "Cost in USD of the group in the current window",
            ["group"],
            registry=registry,
        )
        self._active_members: "Gauge" = Gauge(
            "tokenpool_group_active_members",
            "Number of group members with an active window",
            ["group"],
            registry=registry,
        )
        self._token_limit: "Gauge" = Gauge(
            "tokenpool_token_limit",
            "Effective per-window token threshold",
            ["group"],
            registry=registry,
        )
        self._burn_rate: "Gauge" = Gauge(
            "tokenpool_burn_rate_tokens_per_minute",
            "Group token consumption velocity, 0 when no window is active",
            ["group"],
            registry=registry,
        )
        self._refresh_duration: "Histogram" = Histogram(
            "tokenpool_refresh_duration_seconds",
            "Duration of refresh ticks",
            registry=registry,
        )
        self._refresh_errors: "Counter" = Counter(
            "tokenpool_refresh_errors_total",
            "Total number of failed refresh ticks by stage",
            ["stage"],
            registry=registry,
        )
        self._sync_errors: "Counter" = Counter(
            "tokenpool_sync_errors_total",
            "Total number of failed window pushes by stage",
            ["stage"],
            registry=registry,
        )
        self._windows_synced: "Counter" = Counter(
            "tokenpool_windows_synced_total",
            "Total number of windows pushed to the remote store",
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "tokenpool_last_success_timestamp_seconds",
            "Unix timestamp of the last successful run per loop",
            ["loop"],
            registry=registry,
        )

    def update_statistics(self, stats: "GroupStatistics") -> "None":
        group = stats.group.id
        self._group_tokens.labels(group=group).set(stats.total_tokens)
        self._group_cost.labels(group=group).set(stats.total_cost)
        self._active_members.labels(group=group).set(stats.active_count)
        self._token_limit.labels(group=group).set(stats.token_limit)
        tokens_per_minute = (
            stats.burn_rate.tokens_per_minute if stats.burn_rate is not None else 0
        )
        self._burn_rate.labels(group=group).set(tokens_per_minute)

    def observe_refresh_duration(self, duration_seconds: "float") -> "None":
        self._refresh_duration.observe(duration_seconds)

    def inc_refresh_error(self, stage: "str") -> "None":
        self._refresh_errors.labels(stage=stage).inc()

    def inc_sync_error(self, stage: "str") -> "None":
        self._sync_errors.labels(stage=stage).inc()

    def inc_windows_synced(self) -> "None":
        self._windows_synced.inc()

    def set_last_success(self, loop: "str", timestamp: "float") -> "None":
        self._last_success.labels(loop=loop).set(timestamp)
