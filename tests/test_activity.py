from datetime import datetime, timedelta, timezone

from tokenpool.activity import (
    ActivityBounds,
    WindowState,
    classify_window,
    has_recent_activity,
    is_window_active,
)
from tokenpool.models import Window

START = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


def _window(
    start: "datetime" = START,
    last_activity: "datetime | None" = START + timedelta(hours=1),
) -> "Window":
    return Window(
        id=start.isoformat(),
        start_time=start,
        end_time=start + timedelta(hours=5),
        actual_end_time=last_activity,
    )


class TestClassifyWindow:
    def test_current_inside_bounds(self) -> "None":
        window = _window()
        assert classify_window(window, START) is WindowState.CURRENT
        assert classify_window(window, START + timedelta(hours=4, minutes=59)) is (
            WindowState.CURRENT
        )

    def test_end_is_exclusive(self) -> "None":
        window = _window(last_activity=START + timedelta(hours=4, minutes=50))
        assert classify_window(window, window.end_time) is WindowState.ACTIVE

    def test_active_just_after_end(self) -> "None":
        # ended 10 minutes ago, last activity 1 hour ago
        window = _window(last_activity=START + timedelta(hours=4, minutes=10))
        now = window.end_time + timedelta(minutes=10)
        assert classify_window(window, now) is WindowState.ACTIVE

    def test_expired_past_trailing_bound(self) -> "None":
        window = _window(last_activity=START + timedelta(hours=4, minutes=50))
        now = window.end_time + timedelta(minutes=31)
        assert classify_window(window, now) is WindowState.EXPIRED

    def test_expired_when_activity_is_stale(self) -> "None":
        # ended 5 minutes ago but nothing happened for 3 hours
        window = _window(last_activity=START + timedelta(hours=2))
        now = window.end_time + timedelta(minutes=5)
        assert classify_window(window, now) is WindowState.EXPIRED

    def test_future_window_is_expired(self) -> "None":
        window = _window()
        assert classify_window(window, START - timedelta(minutes=1)) is (
            WindowState.EXPIRED
        )

    def test_no_activity_after_end_is_expired(self) -> "None":
        window = _window(last_activity=None)
        now = window.end_time + timedelta(minutes=1)
        assert classify_window(window, now) is WindowState.EXPIRED

    def test_custom_bounds(self) -> "None":
        bounds = ActivityBounds(
            grace=timedelta(hours=6),
            trailing=timedelta(hours=1),
        )
        window = _window(last_activity=START + timedelta(hours=1))
        now = window.end_time + timedelta(minutes=45)
        assert classify_window(window, now, bounds) is WindowState.ACTIVE
        assert classify_window(window, now) is WindowState.EXPIRED


class TestIsWindowActive:
    def test_current_and_active_are_active(self) -> "None":
        window = _window(last_activity=START + timedelta(hours=4, minutes=50))
        assert is_window_active(window, START + timedelta(hours=1)) is True
        assert is_window_active(window, window.end_time + timedelta(minutes=5)) is True

    def test_expired_is_inactive(self) -> "None":
        window = _window()
        assert is_window_active(window, window.end_time + timedelta(hours=1)) is False


class TestHasRecentActivity:
    def test_within_grace(self) -> "None":
        window = _window(last_activity=START)
        assert has_recent_activity(window, START + timedelta(hours=1, minutes=59))

    def test_outside_grace(self) -> "None":
        window = _window(last_activity=START)
        assert not has_recent_activity(window, START + timedelta(hours=2))

    def test_without_activity(self) -> "None":
        assert not has_recent_activity(_window(last_activity=None), START)
