from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 10
    delay: float = 2.0
    backoff: float = 1.5
    max_delay: float = 30.0

    def delays(self):
        delay = self.delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.backoff


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Await ``fn`` until it succeeds or ``policy.max_attempts`` is spent.

    Only exceptions in ``retry_on`` are retried; anything else propagates at once.
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None
    waits = policy.delays()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            last_error = exc
            if attempt == policy.max_attempts:
                break
            wait = next(waits)
            logger.debug("%s attempt %d/%d failed (%s); retrying in %.1fs", label, attempt, policy.max_attempts, exc, wait)
            await sleep(wait)
    raise RetryExhausted(policy.max_attempts, last_error)
