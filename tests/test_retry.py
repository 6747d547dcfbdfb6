"""Tests for retry with backoff."""

import asyncio

import pytest

from quibble.retry import backoff_delay, is_transient_error, with_retry


class _Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        op = _Flaky([])
        sleeps = _Sleeps()
        assert await with_retry(op, sleep=sleeps) == "ok"
        assert op.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_recovers_from_transient(self):
        op = _Flaky([ConnectionError("reset"), asyncio.TimeoutError()])
        sleeps = _Sleeps()
        assert await with_retry(op, sleep=sleeps, jitter=0.0) == "ok"
        assert op.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        op = _Flaky([TimeoutError("first"), TimeoutError("second"), TimeoutError("third")])
        with pytest.raises(TimeoutError, match="third"):
            await with_retry(op, sleep=_Sleeps())
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_single_attempt_raises_original_error(self):
        op = _Flaky([ConnectionError("reset")])
        sleeps = _Sleeps()
        with pytest.raises(ConnectionError, match="reset"):
            await with_retry(op, max_attempts=1, sleep=sleeps)
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        op = _Flaky([ValueError("bad input")])
        sleeps = _Sleeps()
        with pytest.raises(ValueError):
            await with_retry(op, sleep=sleeps)
        assert op.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        op = _Flaky([ValueError("retry me")])
        assert await with_retry(op, lambda e: True, sleep=_Sleeps()) == "ok"

    @pytest.mark.asyncio
    async def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            await with_retry(_Flaky([]), max_attempts=0)


class TestBackoffDelay:
    def test_exponential_without_jitter(self):
        assert [backoff_delay(n, jitter=0.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(10, jitter=0.0) == 8.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = backoff_delay(2, jitter=0.2)
            assert 1.6 <= delay <= 2.4


class TestIsTransientError:
    @pytest.mark.parametrize(
        "exc",
        [
            asyncio.TimeoutError(),
            ConnectionResetError(),
            RuntimeError("HTTP 429 Too Many Requests"),
            RuntimeError("503 Service Unavailable"),
            RuntimeError("ECONNRESET while reading"),
        ],
    )
    def test_transient(self, exc):
        assert is_transient_error(exc)

    def test_marked_attribute(self):
        class Marked(Exception):
            transient = True

        assert is_transient_error(Marked("whatever"))

    def test_not_transient(self):
        assert not is_transient_error(ValueError("schema mismatch"))
