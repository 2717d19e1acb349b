"""
Retry and deadline helpers for store calls.

Every external store call carries a bounded deadline. A call that exceeds
it raises StoreTimeoutError, which is a TransientStoreError and therefore
subject to the caller's retry policy.

Backends that block the event loop (SQLite) declare `blocking = True` and
are run in the default executor by call_store(), so the deadline bounds the
caller's wait. The worker thread itself is bounded by the SQLite busy
timeout; a call abandoned at its deadline may still finish in the
background. Non-blocking backends run inline.

Invariants:
    - Retries are bounded by RetryPolicy.max_attempts
    - Backoff grows exponentially and is capped at max_delay_s
    - Only exceptions listed in retry_on are retried; others propagate

How to change safely:
    - Keep max_attempts small for hot paths (ingestion)
    - Never retry validation errors
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import StoreTimeoutError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_s: Delay before the second attempt
        max_delay_s: Upper bound for any single delay
        multiplier: Growth factor between attempts
    """

    max_attempts: int = 3
    base_delay_s: float = 0.1
    max_delay_s: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay_s * (self.multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay_s)


async def with_deadline(
    awaitable: Awaitable[T],
    timeout_s: float,
    store: str | None = None,
) -> T:
    """Await a store call with a deadline.

    Raises:
        StoreTimeoutError: If the call does not finish within timeout_s
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(
            f"{store or 'store'} call exceeded {timeout_s}s deadline",
            store=store,
            timeout_s=timeout_s,
        ) from e


async def call_store(
    fn: Callable[..., T],
    *args: Any,
    timeout_s: float,
    store: str | None = None,
    blocking: bool = False,
) -> T:
    """Call a synchronous backend method under a deadline.

    Args:
        fn: Backend method
        *args: Arguments for fn
        timeout_s: Deadline for the call
        store: Store name used in errors
        blocking: Run fn in the default executor instead of inline

    Raises:
        StoreTimeoutError: If the call does not finish within timeout_s
    """
    if blocking:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(fn, *args))
        return await with_deadline(future, timeout_s, store)

    async def run() -> T:
        return fn(*args)

    return await with_deadline(run(), timeout_s, store)


def is_blocking(backend: Any) -> bool:
    """Whether a backend declares that its calls block the event loop."""
    return bool(getattr(backend, "blocking", False))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (TransientStoreError,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call fn until it succeeds or the policy is exhausted.

    Args:
        fn: Zero-argument coroutine factory
        policy: Retry policy
        retry_on: Exception types that trigger a retry
        description: Name used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the first successful call

    Raises:
        The last exception raised by fn once attempts are exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{description} failed after {attempt} attempts: {e}",
                    extra={"attempts": attempt},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                f"{description} failed, retrying in {delay:.3f}s: {e}",
                extra={"attempt": attempt},
            )
            await sleep(delay)
