"""Tests for the bounded retry around rotation conflicts."""

import pytest

from tasktrack.service.errors import InvalidTokenError, TokenAlreadyRotatedError
from tasktrack.service.retry import retry_on_rotation_conflict


class Flaky:
    def __init__(self, failures, exc_type=TokenAlreadyRotatedError):
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type("conflict")
        return "ok"


async def test_returns_first_success():
    op = Flaky(0)
    assert await retry_on_rotation_conflict(op, retries=2, backoff_seconds=0) == "ok"
    assert op.calls == 1


async def test_retries_conflicts_up_to_limit():
    op = Flaky(2)
    assert await retry_on_rotation_conflict(op, retries=2, backoff_seconds=0.001) == "ok"
    assert op.calls == 3


async def test_reraises_after_retries_exhausted():
    op = Flaky(3)
    with pytest.raises(TokenAlreadyRotatedError):
        await retry_on_rotation_conflict(op, retries=2, backoff_seconds=0)
    assert op.calls == 3


async def test_other_errors_are_not_retried():
    op = Flaky(1, exc_type=InvalidTokenError)
    with pytest.raises(InvalidTokenError):
        await retry_on_rotation_conflict(op, retries=2, backoff_seconds=0)
    assert op.calls == 1


async def test_zero_retries_means_single_attempt():
    op = Flaky(1)
    with pytest.raises(TokenAlreadyRotatedError):
        await retry_on_rotation_conflict(op, retries=0, backoff_seconds=0)
    assert op.calls == 1
