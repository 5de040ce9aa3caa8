import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog

from tokenpool.builder import DEFAULT_WINDOW_DURATION, UsageEntry, build_windows
from tokenpool.cache import Clock, TTLCache, utc_now
from tokenpool.errors import PricingError, WindowLoadError
from tokenpool.models import TokenCounts, Window
from tokenpool.pricing import ModelPrice, PricingOracle, lookup_price
from tokenpool.selector import WindowLoader

logger = structlog.get_logger()

# how long a fetched price table is reused to cost log entries
PRICE_TABLE_TTL = timedelta(hours=2)


def _count(usage: "dict[str, Any]", key: "str") -> "int":
    value = usage.get(key) or 0
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"invalid {key}: {value!r}")
    return value


def parse_entry(record: "dict[str, Any]") -> "UsageEntry | None":
    """
    turns one activity log record into a UsageEntry. Records without
    usage data, such as user prompts, yield None. Malformed usage
    raises ValueError.
    """
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    timestamp = datetime.fromisoformat(str(record["timestamp"]))
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    counts = TokenCounts(
        input_tokens=_count(usage, "input_tokens"),
        output_tokens=_count(usage, "output_tokens"),
        cache_creation_tokens=_count(usage, "cache_creation_input_tokens"),
        cache_read_tokens=_count(usage, "cache_read_input_tokens"),
    )
    return UsageEntry(
        timestamp=timestamp,
        token_counts=counts,
        cost_usd=float(record.get("costUSD") or 0.0),
        model=str(message.get("model") or ""),
    )


def _dedup_key(record: "dict[str, Any]") -> "str | None":
    message = record.get("message") or {}
    message_id = message.get("id") if isinstance(message, dict) else None
    request_id = record.get("requestId")
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    return None


def _log_files(paths: "list[Path]") -> "list[Path]":
    files: "list[Path]" = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(path.rglob("*.jsonl")))
        elif path.is_file():
            files.append(path)
    return files


def read_entries(paths: "list[Path]") -> "list[UsageEntry]":
    """
    reads every *.jsonl file under the given paths. Unreadable lines
    are skipped; the same API response logged twice is counted once.
    """
    entries: "list[UsageEntry]" = []
    seen: "set[str]" = set()
    skipped = 0

    for file in _log_files(paths):
        try:
            lines = file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise WindowLoadError(f"cannot read activity log {file}: {exc}") from exc

        for line in lines:
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                if not isinstance(record, dict):
                    skipped += 1
                    continue
                entry = parse_entry(record)
            except (KeyError, TypeError, ValueError):
                skipped += 1
                continue
            if entry is None:
                continue

            key = _dedup_key(record)
            if key is not None:
                if key in seen:
                    continue
                seen.add(key)
            entries.append(entry)

    if skipped:
        logger.debug("activity_lines_skipped", count=skipped)
    return entries


def _needs_price(entry: "UsageEntry") -> "bool":
    return entry.cost_usd == 0 and bool(entry.model)


def price_entries(
    entries: "list[UsageEntry]",
    table: "dict[str, ModelPrice]",
) -> "list[UsageEntry]":
    """
    fills in the cost of entries logged without one from the price
    table. Entries of unknown models keep a zero cost.
    """
    priced: "list[UsageEntry]" = []
    for entry in entries:
        if _needs_price(entry):
            price = lookup_price(table, entry.model)
            if price is not None:
                entry = replace(entry, cost_usd=price.cost_of(entry.token_counts))
        priced.append(entry)
    return priced


def make_local_loader(
    paths: "list[Path]",
    duration: "timedelta" = DEFAULT_WINDOW_DURATION,
    pricing: "PricingOracle | None" = None,
    clock: "Clock" = utc_now,
) -> "WindowLoader":
    """
    returns a WindowLoader that rebuilds the candidate windows from
    the activity logs on every call. File IO runs in a worker thread.

    With a price oracle, entries logged without a cost are priced from
    its table. A failed price lookup leaves them at zero.
    """
    prices: "TTLCache[str, dict[str, ModelPrice]]" = TTLCache(
        "price_table", PRICE_TABLE_TTL, clock
    )

    async def _price_table() -> "dict[str, ModelPrice] | None":
        table = prices.get("table")
        if table is not None:
            return table
        try:
            table = await pricing.fetch_model_pricing()
        except PricingError as exc:
            logger.warning("activity_pricing_unavailable", error=str(exc))
            return None
        prices.set("table", table)
        return table

    async def _load() -> "list[Window]":
        entries = await asyncio.to_thread(read_entries, paths)
        if pricing is not None and any(_needs_price(e) for e in entries):
            table = await _price_table()
            if table is not None:
                entries = price_entries(entries, table)
        return build_windows(entries, duration)

    return _load
