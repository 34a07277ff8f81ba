"""Tests for retry with exponential backoff."""

import time

import pytest

from catalog.services.config import FetchConfig
from catalog.services.errors import NetworkError, ValidationError
from catalog.services.retry import RetryPolicy, retry_with_backoff
from helpers import RecordingSleep


def test_delay_grows_and_is_capped() -> None:
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0, backoff_factor=2.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_policy_from_config_converts_milliseconds() -> None:
    policy = RetryPolicy.from_config(
        FetchConfig(max_attempts=4, base_delay_ms=250, max_delay_ms=2000, backoff_factor=3)
    )

    assert policy == RetryPolicy(
        max_attempts=4, base_delay=0.25, max_delay=2.0, backoff_factor=3.0
    )


async def test_always_failing_makes_exactly_max_attempts() -> None:
    calls = 0
    sleep = RecordingSleep()

    async def fail():
        nonlocal calls
        calls += 1
        raise NetworkError(f"boom {calls}", status=503)

    with pytest.raises(NetworkError) as exc_info:
        await retry_with_backoff(fail, RetryPolicy(max_attempts=3), sleep=sleep)

    assert calls == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.status == 503
    assert "boom 3" in str(exc_info.value)
    assert sleep.delays == [1.0, 2.0]


async def test_success_on_last_attempt() -> None:
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise NetworkError("not yet")
        return "ok"

    result = await retry_with_backoff(
        flaky, RetryPolicy(max_attempts=3), sleep=RecordingSleep()
    )

    assert result == "ok"
    assert calls == 3


async def test_non_retryable_error_propagates_immediately() -> None:
    calls = 0

    async def invalid():
        nonlocal calls
        calls += 1
        raise ValidationError("bad payload")

    with pytest.raises(ValidationError):
        await retry_with_backoff(invalid, RetryPolicy(max_attempts=3), sleep=RecordingSleep())

    assert calls == 1


async def test_on_retry_reports_attempt_and_delay() -> None:
    seen = []

    async def fail():
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        await retry_with_backoff(
            fail,
            RetryPolicy(max_attempts=3, base_delay=0.5),
            on_retry=lambda e, attempt, delay: seen.append((attempt, delay)),
            sleep=RecordingSleep(),
        )

    assert seen == [(1, 0.5), (2, 1.0)]


async def test_passed_deadline_stops_without_sleeping() -> None:
    calls = 0
    sleep = RecordingSleep()

    async def fail():
        nonlocal calls
        calls += 1
        raise NetworkError("down")

    with pytest.raises(NetworkError) as exc_info:
        await retry_with_backoff(
            fail,
            RetryPolicy(max_attempts=3),
            sleep=sleep,
            deadline=time.monotonic() - 1,
        )

    assert calls == 1
    assert sleep.delays == []
    assert exc_info.value.attempts == 1


async def test_delay_capped_by_time_left() -> None:
    sleep = RecordingSleep()

    async def fail():
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        await retry_with_backoff(
            fail,
            RetryPolicy(max_attempts=2, base_delay=5.0),
            sleep=sleep,
            deadline=time.monotonic() + 0.2,
        )

    assert len(sleep.delays) == 1
    assert 0 < sleep.delays[0] <= 0.2
