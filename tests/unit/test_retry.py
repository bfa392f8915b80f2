"""Retry policy: backoff growth, retryable classification, exhaustion."""
import pytest

from notechat.errors import (
    CollectionNotFoundError,
    DimensionMismatchError,
    IndexUnavailableError,
    UpstreamError,
)
from notechat.retry import backoff_delay, call_with_retry, is_retryable


def test_backoff_doubles_and_caps():
    assert [backoff_delay(a, 0.5, 3.0) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.parametrize(
    "error,expected",
    [
        (UpstreamError("reset"), True),
        (UpstreamError("bad key", status_code=401, retryable=False), False),
        (IndexUnavailableError("disk busy"), True),
        (CollectionNotFoundError("notes"), False),
        (DimensionMismatchError(3, 4), False),
        (ValueError("nope"), False),
    ],
)
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected


class Flaky:
    def __init__(self, failures, error_factory=lambda: UpstreamError("reset")):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "ok"


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    op = Flaky(failures=2)

    result = await call_with_retry(op, attempts=3, base_delay=0, max_delay=0, op_name="test")

    assert result == "ok"
    assert op.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_attempts():
    op = Flaky(failures=10)

    with pytest.raises(UpstreamError):
        await call_with_retry(op, attempts=2, base_delay=0, max_delay=0, op_name="test")

    assert op.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_at_once():
    op = Flaky(failures=1, error_factory=lambda: UpstreamError("denied", 401, retryable=False))

    with pytest.raises(UpstreamError):
        await call_with_retry(op, attempts=5, base_delay=0, max_delay=0, op_name="test")

    assert op.calls == 1
