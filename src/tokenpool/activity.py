from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from tokenpool.models import Window


class WindowState(str, Enum):
    # now falls inside [start_time, end_time)
    CURRENT = "current"
    # window ended a moment ago and the actor is still finishing up
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class ActivityBounds:
    """
    ActivityBounds holds the two bounds that keep a window
    active after its nominal end.
     - grace: maximum age of the last observed activity.
     - trailing: maximum time elapsed since end_time.
    """

    grace: "timedelta" = timedelta(hours=2)
    trailing: "timedelta" = timedelta(minutes=30)


DEFAULT_BOUNDS = ActivityBounds()


def classify_window(
    window: "Window",
    now: "datetime",
    bounds: "ActivityBounds" = DEFAULT_BOUNDS,
) -> "WindowState":
    """
    classifies the window into exactly one state. Pure function of the
    window boundaries, its last activity and now.
    """
    if window.start_time <= now < window.end_time:
        return WindowState.CURRENT

    if now < window.start_time or window.actual_end_time is None:
        return WindowState.EXPIRED

    recent_activity = now - window.actual_end_time < bounds.grace
    just_ended = now - window.end_time < bounds.trailing
    if recent_activity and just_ended:
        return WindowState.ACTIVE

    return WindowState.EXPIRED


def is_window_active(
    window: "Window",
    now: "datetime",
    bounds: "ActivityBounds" = DEFAULT_BOUNDS,
) -> "bool":
    return classify_window(window, now, bounds) is not WindowState.EXPIRED


def has_recent_activity(
    window: "Window",
    now: "datetime",
    bounds: "ActivityBounds" = DEFAULT_BOUNDS,
) -> "bool":
    """
    checks whether the window saw activity within the grace bound.
    """
    if window.actual_end_time is None:
        return False
    return now - window.actual_end_time < bounds.grace
