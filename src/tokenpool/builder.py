from dataclasses import dataclass
from datetime import datetime, timedelta

from tokenpool.models import TokenCounts, Window

DEFAULT_WINDOW_DURATION = timedelta(hours=5)


@dataclass(frozen=True, slots=True)
class UsageEntry:
    """
    UsageEntry is a single locally observed API call.
    """

    timestamp: "datetime"
    token_counts: "TokenCounts"
    cost_usd: "float" = 0.0
    model: "str" = ""


def _floor_to_hour(ts: "datetime") -> "datetime":
    return ts.replace(minute=0, second=0, microsecond=0)


def _close_window(
    start: "datetime",
    duration: "timedelta",
    entries: "list[UsageEntry]",
) -> "Window":
    counts = TokenCounts()
    cost = 0.0
    models: "list[str]" = []
    for entry in entries:
        counts = counts + entry.token_counts
        cost += entry.cost_usd
        if entry.model and entry.model not in models:
            models.append(entry.model)

    return Window(
        id=start.isoformat(),
        start_time=start,
        end_time=start + duration,
        actual_end_time=entries[-1].timestamp,
        token_counts=counts,
        cost_usd=cost,
        models=tuple(models),
    )


def build_windows(
    entries: "list[UsageEntry]",
    duration: "timedelta" = DEFAULT_WINDOW_DURATION,
) -> "list[Window]":
    """
    groups usage entries into fixed-length windows, oldest first.

    A window starts at its first entry floored to the hour. The next
    entry opens a new window when it falls at or past the window's
    end, or when it comes at least one full duration after the
    previous entry. Silences of at least one duration between two
    windows are emitted as gap windows.
    """
    if not entries:
        return []

    ordered = sorted(entries, key=lambda e: e.timestamp)
    windows: "list[Window]" = []
    start = _floor_to_hour(ordered[0].timestamp)
    current: "list[UsageEntry]" = []

    for entry in ordered:
        if current:
            since_last = entry.timestamp - current[-1].timestamp
            if entry.timestamp >= start + duration or since_last >= duration:
                closed = _close_window(start, duration, current)
                windows.append(closed)

                if since_last >= duration:
                    gap_start = current[-1].timestamp + duration
                    windows.append(
                        Window(
                            id=f"gap-{gap_start.isoformat()}",
                            start_time=gap_start,
                            end_time=entry.timestamp,
                            actual_end_time=None,
                            is_gap=True,
                        )
                    )

                start = _floor_to_hour(entry.timestamp)
                current = []

        current.append(entry)

    windows.append(_close_window(start, duration, current))
    return windows
