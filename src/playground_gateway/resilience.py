"""Backoff for flaky container-daemon calls.

Only :class:`TransientRuntimeError` is retried by default. A daemon that
cannot be reached at all is not transient; the provisioner falls back to a
simulated environment rather than waiting for it.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple, Type

from playground_gateway.exceptions import TransientRuntimeError

logger = logging.getLogger(__name__)

OnRetry = Callable[[Exception, int, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a runtime call and how long to wait between tries.

    The n-th wait is ``base_delay * backoff_factor**n`` capped at
    ``max_delay``, plus up to ``jitter`` seconds of noise.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: float = 0.5
    retry_on: Tuple[Type[Exception], ...] = (TransientRuntimeError,)

    def delays(self) -> Iterator[float]:
        for n in range(self.max_retries):
            wait = min(self.base_delay * self.backoff_factor ** n, self.max_delay)
            yield wait + random.uniform(0, self.jitter)


# Container creation and exec: a couple of quick retries, then give up
RUNTIME_RETRY_POLICY = RetryPolicy(max_retries=2, base_delay=0.5, max_delay=5.0, jitter=0.3)


def retry_async(policy: Optional[RetryPolicy] = None, *, on_retry: Optional[OnRetry] = None):
    """Retry an async callable per ``policy`` (defaults to :data:`RUNTIME_RETRY_POLICY`).

    ``on_retry(exc, attempt, delay)`` runs before each wait.
    """
    policy = policy or RUNTIME_RETRY_POLICY

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            waits = policy.delays()
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except policy.retry_on as exc:
                    delay = next(waits, None)
                    if delay is None:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            func.__qualname__, attempt + 1, exc,
                        )
                        raise
                    attempt += 1
                    logger.warning(
                        "%s failed (%s), retry %d/%d in %.1fs",
                        func.__qualname__, exc, attempt, policy.max_retries, delay,
                    )
                    if on_retry is not None:
                        on_retry(exc, attempt, delay)
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
