"""Bounded multiplicative backoff shared by connection and submission retries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

T = TypeVar("T")
logger = logging.getLogger("backoff")


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule ``min(base * factor ** attempt, cap)`` over a fixed attempt count.

    Attributes:
        base: Delay before the first retry, in seconds.
        factor: Geometric growth factor applied per attempt.
        cap: Hard ceiling for any single delay.
        max_attempts: Number of attempts the schedule allows.
    """

    base: float = 0.25
    factor: float = 1.4
    cap: float = 2.0
    max_attempts: int = 40

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("backoff delays must be non-negative")
        if self.factor < 1.0:
            raise ValueError("backoff factor must be >= 1.0")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    def delay(self, attempt: int) -> float:
        """Delay before 0-based ``attempt``."""
        return min(self.base * (self.factor ** attempt), self.cap)

    def delays(self) -> Iterator[float]:
        for attempt in range(self.max_attempts):
            yield self.delay(attempt)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: BackoffPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Call ``func`` until it succeeds or the policy's attempts are exhausted.

    The first call happens immediately; every retry waits according to
    ``policy``. The last error is re-raised once the budget is spent.
    """
    last_exc: Optional[BaseException] = None
    for attempt in range(max(policy.max_attempts, 1)):
        if attempt:
            delay = policy.delay(attempt - 1)
            if on_retry is not None and last_exc is not None:
                on_retry(attempt, delay, last_exc)
            await sleep(delay)
        try:
            return await func(*args, **kwargs)
        except retry_on as exc:
            last_exc = exc
            logger.debug("Attempt %d/%d failed: %s", attempt + 1, policy.max_attempts, exc)
    if last_exc is None:
        raise RuntimeError("retry policy allowed no attempts")
    raise last_exc


__all__ = ["BackoffPolicy", "retry_with_backoff"]
