import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from tokenpool.activity import is_window_active
from tokenpool.cache import Clock, utc_now
from tokenpool.errors import StoreError
from tokenpool.metrics import MetricsUpdater
from tokenpool.models import Window
from tokenpool.result import Err, Ok
from tokenpool.service import GroupUsageService

logger = structlog.get_logger()

# a window that failed this many pushes is left alone
MAX_SYNC_FAILURES = 3


@dataclass
class SyncState:
    last_sync_time: "datetime | None" = None
    last_synced_window_id: "str | None" = None
    synced_window_ids: "set[str]" = field(default_factory=set)
    failed_syncs: "dict[str, int]" = field(default_factory=dict)
    # windows whose last successful push marked them active
    active_windows: "dict[str, Window]" = field(default_factory=dict)


class SyncBridge:
    """
    SyncBridge periodically pushes the actor's current local window to
    the remote store so the other members of the group can see it.

    A window that was already pushed is pushed again while it is still
    active, since its counts keep growing, and once more after it
    expires so the remote row stops reporting it as active. That last
    push also happens when a newer window has taken its place. A window
    whose push failed MAX_SYNC_FAILURES times in a row is skipped from
    then on.
    Pushes are idempotent upserts, so a repeated push is harmless.
    """

    def __init__(
        self,
        service: "GroupUsageService",
        group_id: "str",
        actor_id: "str",
        metrics_updater: "MetricsUpdater | None" = None,
        sync_interval_seconds: "float" = 30,
        max_failures: "int" = MAX_SYNC_FAILURES,
        clock: "Clock" = utc_now,
    ) -> "None":
        self._service = service
        self._group_id = group_id
        self._actor_id = actor_id
        self._metrics = metrics_updater
        self._interval = sync_interval_seconds
        self._max_failures = max_failures
        self._clock = clock
        self._state = SyncState()
        self._running = False
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the sync loop to stop. A pending wait, including a
        retry delay, is aborted.
        """
        self._stop_event.set()

    def status(self) -> "dict[str, object]":
        return {
            "is_running": self._running,
            "last_sync_time": self._state.last_sync_time,
            "synced_count": len(self._state.synced_window_ids),
            "failed_count": len(self._state.failed_syncs),
        }

    def clear_state(self) -> "None":
        self._state = SyncState()

    async def run(self) -> "None":
        """
        pushes immediately, then every sync interval until stop() is
        called.
        """
        self._running = True
        logger.info(
            "sync_started",
            group_id=self._group_id,
            interval=self._interval,
        )

        try:
            while not self._stop_event.is_set():
                try:
                    result = await self.sync_now()
                    if isinstance(result, Err):
                        logger.warning("sync_cycle_failed", error=str(result))
                        self._inc_error("push")
                    elif self._metrics is not None:
                        self._metrics.set_last_success("sync", time.time())
                except Exception:
                    logger.exception("sync_cycle_error")
                    self._inc_error("cycle")

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._interval
                    )
                except TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("sync_stopped")

    async def sync_now(self) -> "Ok[int] | Err[StoreError]":
        """
        pushes the current window if it needs pushing, along with any
        window still marked active remotely that is no longer current.
        Returns how many windows were written.
        """
        window = await self._service.get_current_window(self._actor_id)

        candidates: "list[Window]" = []
        if window is not None and not window.is_gap:
            candidates.append(window)
        candidates.extend(
            w
            for window_id, w in list(self._state.active_windows.items())
            if window is None or window_id != window.id
        )

        synced = 0
        error: "Err[StoreError] | None" = None
        for candidate in candidates:
            result = await self._sync_window(candidate)
            if isinstance(result, Err):
                error = result
            elif result.value:
                synced += 1

        self._state.last_sync_time = self._clock()
        if error is not None:
            return error
        if synced:
            logger.debug("windows_synced", count=synced)
        return Ok(synced)

    async def _sync_window(self, window: "Window") -> "Ok[bool] | Err[StoreError]":
        active = is_window_active(window, self._clock(), self._service.bounds)
        already_final = (
            window.id in self._state.synced_window_ids
            and window.id not in self._state.active_windows
        )
        if already_final and not active:
            return Ok(False)

        failures = self._state.failed_syncs.get(window.id, 0)
        if failures >= self._max_failures:
            return Ok(False)

        result = await self._service.push_window(
            self._group_id,
            self._actor_id,
            window,
            stop_event=self._stop_event,
        )
        if isinstance(result, Err):
            failures += 1
            self._state.failed_syncs[window.id] = failures
            logger.warning(
                "window_sync_failed",
                window_id=window.id,
                attempt=failures,
                max_failures=self._max_failures,
                error=str(result),
            )
            if failures >= self._max_failures:
                logger.debug("window_sync_abandoned", window_id=window.id)
            return result

        self._state.synced_window_ids.add(window.id)
        self._state.failed_syncs.pop(window.id, None)
        self._state.last_synced_window_id = window.id
        if result.value.is_active:
            self._state.active_windows[window.id] = window
        else:
            self._state.active_windows.pop(window.id, None)
        if self._metrics is not None:
            self._metrics.inc_windows_synced()
        logger.debug("window_synced", window_id=window.id, is_active=result.value.is_active)
        return Ok(True)

    def _inc_error(self, stage: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_sync_error(stage)
