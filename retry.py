"""Exponential backoff for idempotent reads.

Mutations never go through here: replaying an optimistic apply would apply
it twice.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from errors import ErrorKind, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.network


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.3
    should_retry: Callable[[BaseException], bool] = field(default=is_transient)

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        # Spread evenly around the nominal delay, +/- jitter/2.
        return max(0.0, delay * (1 + self.jitter * rand() - self.jitter / 2))


@dataclass
class RetryResult(Generic[T]):
    ok: bool
    attempts: int
    elapsed: float
    value: Optional[T] = None
    error: Optional[BaseException] = None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    started = time.monotonic()
    last_error: Optional[BaseException] = None
    attempts = 0
    for attempt in range(policy.max_retries + 1):
        attempts = attempt + 1
        try:
            value = await operation()
        except Exception as exc:
            last_error = exc
            if attempt == policy.max_retries or not policy.should_retry(exc):
                break
            delay = policy.delay_for(attempt)
            logger.info(
                f"retry_scheduled: attempt={attempts} delay={delay:.2f}s error={exc!r}"
            )
            await sleep(delay)
        else:
            return RetryResult(
                ok=True,
                attempts=attempts,
                elapsed=time.monotonic() - started,
                value=value,
            )
    return RetryResult(
        ok=False,
        attempts=attempts,
        elapsed=time.monotonic() - started,
        error=last_error,
    )


def _load_should_retry(error: BaseException) -> bool:
    # A freshly created category may not be readable yet.
    return is_transient(error) or classify_error(error) is ErrorKind.not_found


CATEGORY_LOAD_RETRY = RetryPolicy(
    max_retries=3, base_delay=0.5, max_delay=5.0, should_retry=_load_should_retry
)
READ_RETRY = RetryPolicy(max_retries=2, base_delay=1.0, max_delay=8.0)
