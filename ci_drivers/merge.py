"""
Merge automation with retry and fallback.

The primary path asks the provider to merge a pull request once its pipeline
succeeds, retrying transient failures with exponential backoff. When that
path is exhausted (or the provider has no gated merge at all) a single
unconditional merge is attempted instead of leaving the pull request open.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from ci_common.errors import ApiError, UnsupportedOperation
from ci_common.models import MERGE_MODES

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Delays run initial_delay, initial_delay * multiplier, ... capped at
    max_delay, for at most attempts calls.
    """

    attempts: int = 10
    initial_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts."""
        delays = []
        delay = self.initial_delay
        for _ in range(max(self.attempts - 1, 0)):
            delays.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return delays


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    retry_on: tuple[type[BaseException], ...] = (ApiError,),
) -> T:
    """
    Await func until it succeeds or the policy runs out of attempts.

    Only exceptions in retry_on are retried; anything else propagates
    immediately. After the last attempt the last error is re-raised.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except retry_on as e:
            if attempt > len(delays):
                raise
            delay = delays[attempt - 1]
            logger.debug(
                f"Attempt {attempt}/{policy.attempts} failed: {e}; retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)


def check_merge_mode(
    merge_mode: str, supported: Iterable[str], provider: str
) -> None:
    """
    Reject merge modes the provider cannot honour, before any network call.

    Raises:
        UnsupportedOperation: If merge_mode is unknown or unsupported
    """
    if merge_mode not in MERGE_MODES:
        raise UnsupportedOperation(
            f"Unknown merge mode {merge_mode!r}; expected one of {', '.join(MERGE_MODES)}"
        )
    if merge_mode not in supported:
        raise UnsupportedOperation(
            f"{merge_mode.capitalize()} auto-merge mode not implemented for {provider}"
        )


async def merge_with_fallback(
    enable_auto_merge: Callable[[], Awaitable[Any]],
    merge_now: Callable[[], Awaitable[Any]],
    policy: RetryPolicy = RetryPolicy(),
) -> None:
    """
    Engage auto-merge, degrading to an immediate merge when that fails.

    The gated call is retried per policy. If it keeps failing, or raises
    UnsupportedOperation because the provider has no gated merge, merge_now
    is called exactly once. A failing merge_now is not retried; its error is
    logged and raised to the caller.
    """
    try:
        await retry_with_backoff(enable_auto_merge, policy)
        return
    except UnsupportedOperation as e:
        logger.warning(f"Auto-merge unavailable: {e}. Trying to merge immediately...")
    except ApiError as e:
        logger.warning(f"Failed to enable auto-merge: {e}. Trying to merge immediately...")

    try:
        await merge_now()
    except ApiError as e:
        logger.error(f"Immediate merge failed: {e}")
        raise ApiError(e.status_code, f"Failed to merge immediately: {e.message}") from e
