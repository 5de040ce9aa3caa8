import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from tokenpool.metrics import MetricsUpdater
from tokenpool.models import GroupStatistics
from tokenpool.result import Err
from tokenpool.service import GroupUsageService

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class MonitorFrame:
    """
    what one refresh tick hands to the render callback. On a failed
    tick stats is the last good snapshot, or None if there never was
    one.
    """

    stats: "GroupStatistics | None"
    error: "str | None" = None
    retry_in_seconds: "float | None" = None

    @property
    def is_stale(self) -> "bool":
        return self.error is not None


Renderer = Callable[[MonitorFrame], None]


def log_render(frame: "MonitorFrame") -> "None":
    """
    default renderer, one structured log line per tick.
    """
    stats = frame.stats
    if frame.error is not None:
        logger.warning(
            "group_snapshot_stale",
            error=frame.error,
            retry_in_seconds=frame.retry_in_seconds,
            has_snapshot=stats is not None,
        )
        return
    if stats is None:
        return

    usage = stats.total_tokens / stats.token_limit if stats.token_limit else 0.0
    logger.info(
        "group_snapshot",
        group=stats.group.name,
        total_tokens=stats.total_tokens,
        total_cost=round(stats.total_cost, 4),
        token_limit=stats.token_limit,
        usage_percent=round(usage * 100, 1),
        active_members=stats.active_count,
        burn=stats.burn_rate.indicator.value if stats.burn_rate else None,
        members=[f"{m.status_glyph} {m.display_name}" for m in stats.member_stats],
        advisories=list(stats.advisories),
    )


class LiveMonitor:
    """
    LiveMonitor drives the refresh loop. Every tick it sweeps expired
    cache entries, builds a complete GroupStatistics snapshot and only
    then calls the render callback, so a frame is never drawn from
    partial data. A failed tick re-renders the last good snapshot with
    the error and the time until the next attempt.
    """

    def __init__(
        self,
        service: "GroupUsageService",
        group_id: "str",
        actor_id: "str | None",
        render: "Renderer" = log_render,
        metrics_updater: "MetricsUpdater | None" = None,
        refresh_interval_seconds: "float" = 5,
        publish_live_status: "bool" = False,
    ) -> "None":
        self._service = service
        self._group_id = group_id
        self._actor_id = actor_id
        self._render = render
        self._metrics = metrics_updater
        self._interval = refresh_interval_seconds
        self._publish = publish_live_status
        self._last_good: "GroupStatistics | None" = None
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def last_snapshot(self) -> "GroupStatistics | None":
        return self._last_good

    def stop(self) -> "None":
        """
        signals the refresh loop to stop. The wait between ticks is
        aborted immediately.
        """
        self._stop_event.set()

    async def run(self) -> "None":
        """
        runs ticks until stop() is called.
        """
        logger.info(
            "monitor_started",
            group_id=self._group_id,
            interval=self._interval,
        )
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("refresh_tick_error")
                self._inc_error("tick")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("monitor_stopped")

    async def tick(self) -> "MonitorFrame":
        tick_start = time.monotonic()

        self._service.caches.sweep()

        result = await self._service.get_group_statistics(
            self._group_id, self._actor_id, stop_event=self._stop_event
        )
        if isinstance(result, Err):
            self._inc_error("statistics")
            frame = MonitorFrame(
                stats=self._last_good,
                error=str(result),
                retry_in_seconds=self._interval,
            )
            self._render(frame)
            return frame

        stats = result.value
        self._last_good = stats
        if self._metrics is not None:
            self._metrics.update_statistics(stats)

        if self._publish:
            published = await self._service.publish_live_status(
                stats, stop_event=self._stop_event
            )
            if isinstance(published, Err):
                logger.warning("live_status_publish_failed", error=str(published))
                self._inc_error("publish")

        frame = MonitorFrame(stats=stats)
        self._render(frame)

        if self._metrics is not None:
            self._metrics.observe_refresh_duration(time.monotonic() - tick_start)
            self._metrics.set_last_success("refresh", time.time())
        return frame

    def _inc_error(self, stage: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_refresh_error(stage)
