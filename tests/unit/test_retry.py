"""Tests for utils/retry.py."""

from unittest.mock import AsyncMock, patch

import pytest

from repo_autopilot.exceptions import (
    AuthenticationError,
    NotFoundError,
    RateLimitError,
    TransientCollaboratorError,
)
from repo_autopilot.utils.retry import async_retry, retry_call


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("repo_autopilot.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_returns_first_success(no_sleep):
    func = AsyncMock(side_effect=[TransientCollaboratorError("timeout"), "ok"])

    assert await retry_call(func, 1, max_attempts=3) == "ok"
    assert func.await_count == 2
    no_sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_exponential_backoff(no_sleep):
    func = AsyncMock(side_effect=TransientCollaboratorError("503"))

    with pytest.raises(TransientCollaboratorError):
        await retry_call(func, max_attempts=3, backoff_factor=2.0)

    assert func.await_count == 3
    assert [c.args[0] for c in no_sleep.await_args_list] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after(no_sleep):
    func = AsyncMock(side_effect=[RateLimitError("slow down", retry_after=30), "ok"])

    await retry_call(func, max_attempts=2)

    no_sleep.assert_awaited_once_with(30)


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [AuthenticationError("bad token"), NotFoundError("gone"), ValueError("bug")])
async def test_non_retryable_errors_propagate_immediately(error, no_sleep):
    func = AsyncMock(side_effect=error)

    with pytest.raises(type(error)):
        await retry_call(func, max_attempts=5)

    assert func.await_count == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_exhausted_rate_limit_is_reraised(no_sleep):
    func = AsyncMock(side_effect=RateLimitError("slow down"))

    with pytest.raises(RateLimitError):
        await retry_call(func, max_attempts=2, backoff_factor=1.5)

    assert func.await_count == 2


@pytest.mark.asyncio
async def test_decorator_form(no_sleep):
    attempts = []

    @async_retry(max_attempts=3, backoff_factor=1.0)
    async def flaky(value: int) -> int:
        attempts.append(value)
        if len(attempts) < 3:
            raise TransientCollaboratorError("timeout")
        return value * 2

    assert await flaky(21) == 42
    assert attempts == [21, 21, 21]
    assert flaky.__name__ == "flaky"
