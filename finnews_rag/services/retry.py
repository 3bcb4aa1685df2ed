# =============================================================================
# Retry Policy — Bounded Exponential Backoff (tenacity)
# =============================================================================
#
# One policy object is shared by the embedding client and the vector store
# backends, so retry behaviour is configured once (see Settings.retry_*) and
# tested once. The loop itself is tenacity's `Retrying` / `AsyncRetrying`.
#
# DELAYS:
#   attempt 1 fails → sleep initial_delay
#   attempt 2 fails → sleep initial_delay * backoff_factor
#   ...each delay capped at max_delay
#   attempt max_attempts fails → the last exception is re-raised unchanged
#
# Only exceptions listed in `retry_on` are retried (TransientError by
# default). Anything else propagates on the first failure.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from finnews_rag.config import settings
from finnews_rag.services.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    `sleep` / `async_sleep` are injectable so tests can run without waiting.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (TransientError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    async_sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False,
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call `fn` synchronously, retrying retryable failures."""
        retrying = Retrying(sleep=self.sleep, **self._tenacity_options())
        return retrying(fn, *args, **kwargs)

    async def acall(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any,
    ) -> T:
        """Await `fn`, retrying retryable failures."""
        retrying = AsyncRetrying(sleep=self.async_sleep, **self._tenacity_options())
        return await retrying(fn, *args, **kwargs)

    def _tenacity_options(self) -> dict[str, Any]:
        return {
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.backoff_factor,
                max=self.max_delay,
            ),
            "retry": retry_if_exception_type(self.retry_on),
            "before_sleep": _log_retry,
            "reraise": True,
        }


def default_retry_policy() -> RetryPolicy:
    """Build a RetryPolicy from the retry_* settings."""
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        backoff_factor=settings.retry_backoff_factor,
        max_delay=settings.retry_max_delay,
    )


def _log_retry(retry_state: RetryCallState) -> None:
    fn = retry_state.fn
    name = getattr(fn, "__qualname__", None) or repr(fn)
    logger.info(
        "%s attempt %d failed (%s), retrying in %.1fs",
        name,
        retry_state.attempt_number,
        retry_state.outcome.exception() if retry_state.outcome else None,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )
