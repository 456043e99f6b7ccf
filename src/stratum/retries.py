"""Retry loop for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .exceptions import TransientProviderError
from .settings import RunOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AttemptCounter:
    """Counts attempts made by call_with_retries."""

    def __init__(self) -> None:
        self.attempts = 0


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    options: RunOptions,
    description: str,
    counter: AttemptCounter | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``call()``, retrying transient provider errors with exponential backoff.

    Args:
        call: Zero-argument coroutine factory (a fresh coroutine per attempt)
        options: Run settings (max_attempts, backoff_base, backoff_max)
        description: Used in log messages (e.g., "create aws_vpc.main")
        counter: Optional attempt counter, updated on every attempt
        sleep: Sleep function (injected for testing)

    Raises:
        TransientProviderError: If every attempt failed transiently
        Exception: Any non-transient error, immediately
    """
    attempt = 0
    while True:
        attempt += 1
        if counter is not None:
            counter.attempts = attempt
        try:
            return await call()
        except TransientProviderError as e:
            if attempt >= options.max_attempts:
                logger.warning("%s failed after %d attempts: %s", description, attempt, e)
                raise
            delay = options.backoff_delay(attempt)
            logger.info(
                "%s failed transiently (attempt %d/%d), retrying in %.1fs: %s",
                description,
                attempt,
                options.max_attempts,
                delay,
                e,
            )
            await sleep(delay)
