from datetime import datetime, timezone

from prometheus_client import CollectorRegistry

from tokenpool.metrics import MetricsUpdater
from tokenpool.models import BurnIndicator, BurnRate, Group, GroupStatistics

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


def _stats(burn_rate: "BurnRate | None") -> "GroupStatistics":
    return GroupStatistics(
        group=Group(id="g1", name="crew", join_code="XYZ"),
        members=(),
        current_window=None,
        member_stats=(),
        total_tokens=12_345,
        total_cost=1.5,
        active_count=3,
        burn_rate=burn_rate,
        conflicts=(),
        advisories=(),
        token_limit=100_000,
        generated_at=NOW,
    )


class TestMetricsUpdater:
    def test_metric_families_registered(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        MetricsUpdater(registry=registry)
        # prometheus_client strips _total suffix from Counter family names
        metric_names = {m.name for m in registry.collect()}
        assert {
            "tokenpool_group_tokens",
            "tokenpool_group_cost_usd",
            "tokenpool_group_active_members",
            "tokenpool_burn_rate_tokens_per_minute",
            "tokenpool_refresh_errors",
            "tokenpool_sync_errors",
            "tokenpool_refresh_duration_seconds",
        } <= metric_names

    def test_update_statistics_sets_gauges(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_statistics(
            _stats(BurnRate(tokens_per_minute=420.0, cost_per_hour=0.6, indicator=BurnIndicator.NORMAL))
        )

        labels = {"group": "g1"}
        assert registry.get_sample_value("tokenpool_group_tokens", labels) == 12_345
        assert registry.get_sample_value("tokenpool_group_cost_usd", labels) == 1.5
        assert registry.get_sample_value("tokenpool_group_active_members", labels) == 3
        assert registry.get_sample_value("tokenpool_token_limit", labels) == 100_000
        assert (
            registry.get_sample_value("tokenpool_burn_rate_tokens_per_minute", labels)
            == 420.0
        )

    def test_burn_rate_zero_without_active_window(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_statistics(_stats(None))
        assert (
            registry.get_sample_value(
                "tokenpool_burn_rate_tokens_per_minute", {"group": "g1"}
            )
            == 0.0
        )

    def test_error_counters(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.inc_refresh_error("statistics")
        updater.inc_refresh_error("statistics")
        updater.inc_sync_error("push")

        assert (
            registry.get_sample_value(
                "tokenpool_refresh_errors_total", {"stage": "statistics"}
            )
            == 2.0
        )
        assert (
            registry.get_sample_value("tokenpool_sync_errors_total", {"stage": "push"})
            == 1.0
        )

    def test_last_success_and_duration(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.set_last_success("refresh", 1234.5)
        updater.observe_refresh_duration(0.25)

        assert (
            registry.get_sample_value(
                "tokenpool_last_success_timestamp_seconds", {"loop": "refresh"}
            )
            == 1234.5
        )
        assert registry.get_sample_value("tokenpool_refresh_duration_seconds_sum") == 0.25
