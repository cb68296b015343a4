import pytest

from attestor.errors import IdentityRejected, LogUnavailable
from attestor.utils.retry import backoff_delay, retry_async


def test_backoff_is_capped():
    assert backoff_delay(0, 0.5, 8.0) == 0.5
    assert backoff_delay(3, 0.5, 8.0) == 4.0
    assert backoff_delay(10, 0.5, 8.0) == 8.0
    assert 8.0 <= backoff_delay(10, 0.5, 8.0, jitter=0.1) <= 8.8


@pytest.mark.anyio
async def test_retries_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise LogUnavailable("503")
        return "ok"

    assert await retry_async(flaky, op="test") == "ok"
    assert len(calls) == 3


@pytest.mark.anyio
async def test_non_retryable_raises_immediately():
    calls = []

    async def rejected():
        calls.append(1)
        raise IdentityRejected("nope")

    with pytest.raises(IdentityRejected):
        await retry_async(rejected, op="test")
    assert len(calls) == 1


@pytest.mark.anyio
async def test_gives_up_after_attempts():
    calls = []

    async def down():
        calls.append(1)
        raise LogUnavailable("down")

    with pytest.raises(LogUnavailable):
        await retry_async(down, op="test", attempts=3)
    assert len(calls) == 3
