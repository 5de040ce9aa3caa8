from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from tokenpool.activity import (
    DEFAULT_BOUNDS,
    ActivityBounds,
    WindowState,
    classify_window,
    has_recent_activity,
)
from tokenpool.cache import Clock, utc_now
from tokenpool.errors import WindowLoadError
from tokenpool.models import Window
from tokenpool.result import Err, Ok

logger = structlog.get_logger()

# loads the full candidate list, typically build_windows over the
# local activity log
WindowLoader = Callable[[], Awaitable["list[Window]"]]

DEFAULT_SELECTOR_TTL = timedelta(seconds=30)


def select_window(
    windows: "list[Window]",
    now: "datetime",
    bounds: "ActivityBounds" = DEFAULT_BOUNDS,
) -> "Window | None":
    """
    picks the single window representing "now" using priority tiers,
    the first non-empty tier wins:
     1. windows that just ended but still see recent activity.
     2. windows whose [start_time, end_time) contains now.
     3. the most recent non-gap window, even if expired.
    Within a tier the latest start_time wins.
    """
    trailing = [
        w
        for w in windows
        if classify_window(w, now, bounds) is WindowState.ACTIVE
        and has_recent_activity(w, now, bounds)
    ]
    if trailing:
        return max(trailing, key=lambda w: w.start_time)

    current = [
        w for w in windows if classify_window(w, now, bounds) is WindowState.CURRENT
    ]
    if current:
        return max(current, key=lambda w: w.start_time)

    recent = [w for w in windows if not w.is_gap]
    if recent:
        return max(recent, key=lambda w: w.start_time)

    return None


class WindowSelector:
    """
    WindowSelector returns one authoritative current window and keeps
    returning the same object for ttl, so the displayed window does
    not flicker between polling cycles. The memoized value is never
    served past its ttl, a failing loader yields an Err instead.
    """

    def __init__(
        self,
        loader: "WindowLoader",
        ttl: "timedelta" = DEFAULT_SELECTOR_TTL,
        bounds: "ActivityBounds" = DEFAULT_BOUNDS,
        clock: "Clock" = utc_now,
    ) -> "None":
        self._loader = loader
        self._ttl = ttl
        self._bounds = bounds
        self._clock = clock
        self._cached: "Window | None" = None
        self._cached_at: "datetime | None" = None

    @property
    def bounds(self) -> "ActivityBounds":
        return self._bounds

    def clear_cache(self) -> "None":
        """
        drops the memoized window, the next select() recomputes.
        """
        self._cached = None
        self._cached_at = None

    def status(self) -> "dict[str, object]":
        age = None
        if self._cached_at is not None:
            age = (self._clock() - self._cached_at).total_seconds()
        return {
            "has_cached_window": self._cached is not None,
            "cache_age_seconds": age,
            "ttl_seconds": self._ttl.total_seconds(),
        }

    async def select(
        self,
        actor_id: "str | None" = None,
    ) -> "Ok[Window | None] | Err[WindowLoadError]":
        now = self._clock()
        if (
            self._cached is not None
            and self._cached_at is not None
            and now - self._cached_at < self._ttl
        ):
            return Ok(self._cached)

        try:
            windows = await self._loader()
        except Exception as exc:
            logger.error("window_load_failed", actor_id=actor_id, error=str(exc))
            self.clear_cache()
            if isinstance(exc, WindowLoadError):
                return Err(exc)
            return Err(WindowLoadError(f"loading windows failed: {exc}"))

        selected = select_window(windows, now, self._bounds)
        if selected is not None:
            self._cached = selected
            self._cached_at = now
            logger.debug(
                "window_selected",
                actor_id=actor_id,
                window_id=selected.id,
                candidates=len(windows),
            )

        return Ok(selected)
