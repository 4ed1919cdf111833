"""Bounded retry with timeout and exponential backoff for capability calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from followup.config import settings
from followup.core.errors import CapabilityFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    backoff: Optional[float] = None,
) -> T:
    """Run an external call with a per-attempt timeout and backoff.

    Retries ``CapabilityFailure`` marked retryable and timeouts. Any other
    exception (including non-retryable capability failures) propagates on
    first occurrence.

    Args:
        operation: Zero-argument coroutine factory
        description: Label used in log lines
        max_attempts: Total attempts (defaults to settings)
        timeout: Seconds allowed per attempt (defaults to settings)
        backoff: Base delay; attempt n waits backoff * 2**n

    Raises:
        CapabilityFailure: The last failure once attempts are exhausted
    """
    max_attempts = max_attempts or settings.capability_max_attempts
    timeout = timeout or settings.capability_timeout_seconds
    backoff = settings.capability_backoff_seconds if backoff is None else backoff

    last_error: Optional[CapabilityFailure] = None

    for attempt in range(max_attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)

        except asyncio.TimeoutError:
            last_error = CapabilityFailure(description, f"timed out after {timeout}s")

        except CapabilityFailure as e:
            if not e.retryable:
                raise
            last_error = e

        if attempt + 1 < max_attempts:
            wait_time = backoff * (2 ** attempt)
            logger.warning(
                f"{description} failed ({last_error}), retrying in {wait_time:.2f}s "
                f"(attempt {attempt + 1}/{max_attempts})"
            )
            await asyncio.sleep(wait_time)

    logger.error(f"{description} failed after {max_attempts} attempts: {last_error}")
    raise last_error
