import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from tokenpool.errors import StoreError
from tokenpool.result import Err, Ok

logger = structlog.get_logger()

T = TypeVar("T")


async def _wait(delay: "float", stop_event: "asyncio.Event | None") -> "bool":
    """
    sleeps for delay seconds. Returns True when stop_event fired
    during the wait.
    """
    if stop_event is None:
        await asyncio.sleep(delay)
        return False

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except TimeoutError:
        return False
    return True


async def with_retry(
    operation: "Callable[[], Awaitable[T]]",
    max_attempts: "int" = 3,
    delay: "float" = 1.0,
    stop_event: "asyncio.Event | None" = None,
    op_name: "str" = "store_operation",
) -> "Ok[T] | Err[StoreError]":
    """
    runs operation up to max_attempts times with a fixed delay between
    attempts. The final failure comes back as an Err instead of being
    raised. Setting stop_event aborts the backoff wait immediately.
    """
    last_error: "BaseException | None" = None

    for attempt in range(1, max_attempts + 1):
        try:
            return Ok(await operation())
        except Exception as exc:
            last_error = exc
            logger.debug(
                "retry_attempt_failed",
                op=op_name,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )

        if attempt < max_attempts and await _wait(delay, stop_event):
            logger.debug("retry_aborted", op=op_name, attempt=attempt)
            break

    logger.warning("retry_exhausted", op=op_name, error=str(last_error))
    if isinstance(last_error, StoreError):
        return Err(last_error)
    return Err(StoreError(f"{op_name} failed: {last_error}"))
