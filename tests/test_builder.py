from datetime import datetime, timedelta, timezone

import pytest

from tokenpool.builder import UsageEntry, build_windows
from tokenpool.models import TokenCounts

T0 = datetime(2025, 6, 2, 9, 17, tzinfo=timezone.utc)


def _entry(at: "datetime", tokens: "int" = 100, model: "str" = "m1") -> "UsageEntry":
    return UsageEntry(
        timestamp=at,
        token_counts=TokenCounts(input_tokens=tokens, output_tokens=tokens // 2),
        cost_usd=0.01,
        model=model,
    )


class TestBuildWindows:
    def test_empty(self) -> "None":
        assert build_windows([]) == []

    def test_single_window_floored_to_hour(self) -> "None":
        windows = build_windows(
            [
                _entry(T0),
                _entry(T0 + timedelta(minutes=30), model="m2"),
                _entry(T0 + timedelta(hours=1), model="m1"),
            ]
        )

        assert len(windows) == 1
        window = windows[0]
        assert window.start_time == datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        assert window.end_time == window.start_time + timedelta(hours=5)
        assert window.actual_end_time == T0 + timedelta(hours=1)
        assert window.total_tokens == 3 * 150
        assert window.cost_usd == pytest.approx(0.03)
        assert window.models == ("m1", "m2")
        assert window.id == window.start_time.isoformat()

    def test_entry_past_end_opens_new_window(self) -> "None":
        # 9:00 window ends at 14:00
        windows = build_windows(
            [
                _entry(T0),
                _entry(T0 + timedelta(hours=3)),
                _entry(T0 + timedelta(hours=5)),
            ]
        )

        assert [w.is_gap for w in windows] == [False, False]
        assert windows[1].start_time == datetime(2025, 6, 2, 14, 0, tzinfo=timezone.utc)

    def test_long_silence_emits_gap(self) -> "None":
        later = T0 + timedelta(hours=8)
        windows = build_windows([_entry(T0), _entry(later)])

        assert [w.is_gap for w in windows] == [False, True, False]
        gap = windows[1]
        assert gap.start_time == T0 + timedelta(hours=5)
        assert gap.end_time == later
        assert gap.actual_end_time is None
        assert gap.total_tokens == 0

    def test_unsorted_input(self) -> "None":
        windows = build_windows([_entry(T0 + timedelta(minutes=10)), _entry(T0)])
        assert len(windows) == 1
        assert windows[0].actual_end_time == T0 + timedelta(minutes=10)

    def test_custom_duration(self) -> "None":
        windows = build_windows(
            [_entry(T0), _entry(T0 + timedelta(minutes=50))],
            duration=timedelta(hours=1),
        )
        assert len(windows) == 2
        assert windows[0].end_time - windows[0].start_time == timedelta(hours=1)
