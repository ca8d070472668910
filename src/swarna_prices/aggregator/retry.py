"""Bounded exponential-backoff retry for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from swarna_prices.core.exceptions import ProviderError
from swarna_prices.core.models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryAborted(Exception):
    """The guard refused another attempt (network calls were switched off)."""

    def __init__(self, attempts: int, last_error: ProviderError | None = None):
        super().__init__(f"retry aborted after {attempts} attempt(s)")
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    guard: Callable[[], bool] | None = None,
    description: str = "call",
) -> tuple[T, int]:
    """Run ``fn`` up to ``policy.attempts`` times.

    Only ``ProviderError`` is retried; anything else propagates at once.
    ``guard`` is checked before every attempt, including the first, so a
    change made while sleeping takes effect before the next request.

    Returns:
        (result, attempts used)

    Raises:
        RetryAborted: ``guard`` returned False.
        ProviderError: The last failure once attempts are exhausted, with
            ``context["attempts"]`` set.
    """
    last_error: ProviderError | None = None
    for attempt in range(policy.attempts):
        if guard is not None and not guard():
            raise RetryAborted(attempt, last_error)
        try:
            return await fn(), attempt + 1
        except ProviderError as e:
            last_error = e
            e.context["attempts"] = attempt + 1
            if attempt + 1 >= policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description, attempt + 1, policy.attempts, e, delay,
            )
            await sleep(delay)

    raise RetryAborted(policy.attempts, last_error)
