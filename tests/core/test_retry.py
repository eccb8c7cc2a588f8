import pytest

from runfeed.core.retry import backoff_delay, retry_with_backoff


class Flaky:
    def __init__(self, failures: int, error: type[Exception] = ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(attempt, 1.0, 10.0) for attempt in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures():
    operation = Flaky(failures=2)
    sleep = RecordingSleep()

    result = await retry_with_backoff(operation, max_attempts=3, sleep=sleep)

    assert result.ok
    assert result.value == "ok"
    assert result.attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_returns_failure_instead_of_raising():
    operation = Flaky(failures=5)
    sleep = RecordingSleep()

    result = await retry_with_backoff(operation, max_attempts=3, base_delay=0.5, sleep=sleep)

    assert not result.ok
    assert result.value is None
    assert isinstance(result.error, ConnectionError)
    assert result.attempts == 3
    assert operation.calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_non_retryable_errors_propagate():
    operation = Flaky(failures=1, error=ValueError)

    with pytest.raises(ValueError):
        await retry_with_backoff(operation, retry_on=(ConnectionError,), sleep=RecordingSleep())

    assert operation.calls == 1


@pytest.mark.asyncio
async def test_at_least_one_attempt_is_made():
    operation = Flaky(failures=0)

    result = await retry_with_backoff(operation, max_attempts=0, sleep=RecordingSleep())

    assert result.ok
    assert result.attempts == 1
