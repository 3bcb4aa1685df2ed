# =============================================================================
# Unit Tests — Retry Policy
# =============================================================================

import asyncio

import pytest

from finnews_rag.services.errors import (
    EmbeddingPermanentError,
    EmbeddingUnavailableError,
    VectorStoreUnavailableError,
)
from finnews_rag.services.retry import RetryPolicy


class _Flaky:
    """Fails `failures` times with `exc`, then returns "ok"."""

    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestDelays:
    def test_exponential_backoff_capped(self):
        sleeps: list[float] = []
        policy = RetryPolicy(
            max_attempts=6, initial_delay=1.0, backoff_factor=2.0, max_delay=5.0,
            sleep=sleeps.append,
        )
        fn = _Flaky(5, EmbeddingUnavailableError("blip"))

        assert policy.call(fn) == "ok"
        assert sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestCall:
    """Tests for RetryPolicy.call() (sync)."""

    def test_success_after_transient_failures(self):
        sleeps: list[float] = []
        policy = RetryPolicy(max_attempts=3, sleep=sleeps.append)
        fn = _Flaky(2, EmbeddingUnavailableError("blip"))

        assert policy.call(fn) == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_attempts_reraise_last_error(self):
        policy = RetryPolicy(max_attempts=2, sleep=lambda _: None)
        fn = _Flaky(5, VectorStoreUnavailableError("down"))

        with pytest.raises(VectorStoreUnavailableError):
            policy.call(fn)
        assert fn.calls == 2

    def test_non_retryable_error_not_retried(self):
        sleeps: list[float] = []
        policy = RetryPolicy(max_attempts=5, sleep=sleeps.append)
        fn = _Flaky(1, EmbeddingPermanentError("bad key"))

        with pytest.raises(EmbeddingPermanentError):
            policy.call(fn)
        assert fn.calls == 1
        assert sleeps == []

    def test_passes_arguments_through(self):
        policy = RetryPolicy()
        assert policy.call(lambda a, b=0: a + b, 2, b=3) == 5


class TestAcall:
    """Tests for RetryPolicy.acall() (async)."""

    def test_async_retry_uses_async_sleep(self):
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        flaky = _Flaky(1, EmbeddingUnavailableError("blip"))

        async def fn():
            return flaky()

        policy = RetryPolicy(max_attempts=3, initial_delay=0.5, async_sleep=fake_sleep)

        assert asyncio.run(policy.acall(fn)) == "ok"
        assert sleeps == [0.5]
