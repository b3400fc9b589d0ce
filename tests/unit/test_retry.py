"""Tests for retry with backoff and timeouts."""

import asyncio

import pytest

from statefulAgent.utils.cancellation import CancellationController
from statefulAgent.utils.error_handler import (
    CancellationError,
    OperationTimeoutError,
    RateLimitError,
)
from statefulAgent.utils.retry import (
    RetryConfig,
    calculate_backoff_delay,
    is_retryable_error,
    with_retry,
    with_timeout,
)


class TestRetryPredicate:
    """测试可重试错误判定"""

    @pytest.mark.parametrize("error", [
        OperationTimeoutError("slow", 1),
        RateLimitError("throttled"),
        ConnectionError("reset"),
        RuntimeError("502 Bad Gateway"),
        RuntimeError("Request timed out"),
        RuntimeError("429 Too Many Requests"),
    ])
    def test_retryable(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize("error", [
        ValueError("invalid api key"),
        RuntimeError("context_length_exceeded"),
        CancellationError(),
    ])
    def test_not_retryable(self, error):
        assert not is_retryable_error(error)


class TestBackoffDelay:
    """测试退避延迟计算"""

    def test_exponential_without_jitter(self):
        config = RetryConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=30.0, random_fn=lambda: 0.5)
        assert [calculate_backoff_delay(i, config) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=2.0, max_delay=15.0, random_fn=lambda: 1.0)
        assert calculate_backoff_delay(5, config) == 15.0

    def test_jitter_bounds(self):
        """抖动在 ±jitter_ratio 范围内"""
        low = RetryConfig(initial_delay=10.0, jitter_ratio=0.3, max_delay=100, random_fn=lambda: 0.0)
        high = RetryConfig(initial_delay=10.0, jitter_ratio=0.3, max_delay=100, random_fn=lambda: 1.0)
        assert calculate_backoff_delay(0, low) == pytest.approx(7.0)
        assert calculate_backoff_delay(0, high) == pytest.approx(13.0)


class TestWithRetry:
    """测试 with_retry"""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []
        retries = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("network down")
            return "ok"

        config = RetryConfig(
            max_retries=3,
            initial_delay=0,
            on_retry=lambda attempt, error, delay: retries.append(attempt),
        )
        assert await with_retry(flaky, config) == "ok"
        assert len(attempts) == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        async def always_fails():
            attempts.append(1)
            raise ConnectionError("network down")

        with pytest.raises(ConnectionError):
            await with_retry(always_fails, RetryConfig(max_retries=2, initial_delay=0))
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        attempts = []

        async def bad_request():
            attempts.append(1)
            raise ValueError("invalid argument")

        with pytest.raises(ValueError):
            await with_retry(bad_request, RetryConfig(max_retries=5, initial_delay=0))
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_never_retried(self):
        """取消错误不重试"""
        attempts = []

        async def cancelled():
            attempts.append(1)
            raise CancellationError()

        with pytest.raises(CancellationError):
            await with_retry(cancelled, RetryConfig(max_retries=5, initial_delay=0))
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        """退避等待期间取消，立即结束"""
        controller = CancellationController()

        async def fails():
            raise ConnectionError("network down")

        config = RetryConfig(
            max_retries=3,
            initial_delay=10,
            token=controller.token,
            on_retry=lambda attempt, error, delay: asyncio.get_running_loop().call_later(0.01, controller.cancel),
        )
        with pytest.raises(CancellationError):
            await asyncio.wait_for(with_retry(fails, config), timeout=2)


class TestWithTimeout:
    """测试 with_timeout"""

    @pytest.mark.asyncio
    async def test_returns_in_time(self):
        async def quick():
            return 1

        assert await with_timeout(quick(), 1) == 1

    @pytest.mark.asyncio
    async def test_raises_operation_timeout(self):
        release = asyncio.Event()

        async def slow():
            await release.wait()

        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(slow(), 0.01, "LLM 响应超时")

        assert "LLM 响应超时" in str(exc_info.value)
        assert exc_info.value.timeout == 0.01
        release.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_no_timeout(self):
        async def quick():
            return "x"

        assert await with_timeout(quick(), None) == "x"
