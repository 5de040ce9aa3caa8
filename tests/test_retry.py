import asyncio
import time

import pytest

from tokenpool.errors import StoreError
from tokenpool.result import Err, Ok
from tokenpool.retry import with_retry


class Flaky:
    """
    An operation failing a fixed number of times before succeeding.
    """

    def __init__(self, failures: "int", error: "Exception | None" = None) -> "None":
        self.failures = failures
        self.error = error or StoreError("connection reset")
        self.calls = 0

    async def __call__(self) -> "str":
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_time(self) -> "None":
        op = Flaky(failures=0)
        result = await with_retry(op, delay=0)
        assert result == Ok("done")
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self) -> "None":
        op = Flaky(failures=2)
        result = await with_retry(op, max_attempts=3, delay=0)
        assert isinstance(result, Ok)
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_final_failure_is_err(self) -> "None":
        op = Flaky(failures=5)
        result = await with_retry(op, max_attempts=3, delay=0)

        assert isinstance(result, Err)
        assert result.error is op.error
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_foreign_errors_are_wrapped(self) -> "None":
        op = Flaky(failures=5, error=RuntimeError("boom"))
        result = await with_retry(op, max_attempts=2, delay=0, op_name="upsert_window")

        assert isinstance(result, Err)
        assert isinstance(result.error, StoreError)
        assert str(result) == "upsert_window failed: boom"

    @pytest.mark.asyncio
    async def test_stop_event_aborts_backoff(self) -> "None":
        op = Flaky(failures=5)
        stop_event = asyncio.Event()
        stop_event.set()

        started = time.monotonic()
        result = await with_retry(op, max_attempts=3, delay=10, stop_event=stop_event)

        assert isinstance(result, Err)
        assert op.calls == 1
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_stop_event_unset_waits_out_delay(self) -> "None":
        op = Flaky(failures=1)
        result = await with_retry(
            op, max_attempts=2, delay=0.01, stop_event=asyncio.Event()
        )
        assert isinstance(result, Ok)
        assert op.calls == 2
