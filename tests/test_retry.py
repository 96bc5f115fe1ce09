"""Tests for the exponential-backoff retry executor."""

from __future__ import annotations

import pytest

from calsync.errors import CalendarError, CalendarErrorCode, SyncTokenExpiredError
from calsync.retry import backoff_delay, retry

pytestmark = pytest.mark.unit


class _FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _rate_limited() -> CalendarError:
    return CalendarError("slow down", code=CalendarErrorCode.RATE_LIMITED)


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert [backoff_delay(n, 1.0) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_scales_with_base(self):
        assert backoff_delay(2, 0.5) == 2.0


class TestRetry:
    async def test_first_success_needs_no_sleep(self):
        sleep = _FakeSleep()
        operation = _Flaky([])
        assert await retry(operation, sleep=sleep) == "ok"
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_retryable_errors_back_off_then_succeed(self):
        sleep = _FakeSleep()
        operation = _Flaky([_rate_limited(), _rate_limited()])
        assert await retry(operation, sleep=sleep) == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_exhausted_attempts_reraise_last_error(self):
        sleep = _FakeSleep()
        errors = [_rate_limited(), _rate_limited(), _rate_limited()]
        last = errors[-1]
        operation = _Flaky(errors)
        with pytest.raises(CalendarError) as excinfo:
            await retry(operation, max_attempts=3, sleep=sleep)
        assert excinfo.value is last
        assert operation.calls == 3
        # No delay after the final attempt.
        assert sleep.delays == [1.0, 2.0]

    async def test_non_retryable_error_fails_immediately(self):
        sleep = _FakeSleep()
        operation = _Flaky([CalendarError("denied", code=CalendarErrorCode.PERMISSION_DENIED)])
        with pytest.raises(CalendarError):
            await retry(operation, sleep=sleep)
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_expired_cursor_is_never_retried(self):
        sleep = _FakeSleep()
        operation = _Flaky([SyncTokenExpiredError("gone")])
        with pytest.raises(SyncTokenExpiredError):
            await retry(operation, sleep=sleep)
        assert operation.calls == 1

    async def test_unclassified_exceptions_propagate_unchanged(self):
        sleep = _FakeSleep()
        operation = _Flaky([KeyError("x")])
        with pytest.raises(KeyError):
            await retry(operation, sleep=sleep)
        assert operation.calls == 1

    async def test_on_retry_sees_attempt_numbers(self):
        seen: list[tuple[int, CalendarErrorCode]] = []
        operation = _Flaky([_rate_limited(), _rate_limited()])
        await retry(
            operation,
            sleep=_FakeSleep(),
            on_retry=lambda attempt, error: seen.append((attempt, error.code)),
        )
        assert seen == [
            (1, CalendarErrorCode.RATE_LIMITED),
            (2, CalendarErrorCode.RATE_LIMITED),
        ]

    async def test_custom_base_delay(self):
        sleep = _FakeSleep()
        operation = _Flaky([_rate_limited(), _rate_limited(), _rate_limited()])
        await retry(operation, max_attempts=4, base_delay=0.25, sleep=sleep)
        assert sleep.delays == [0.25, 0.5, 1.0]

    async def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            await retry(_Flaky([]), max_attempts=0)
