"""
Retry with reconnect.

Transient failures (watchdog expiry, key exchange hang-ups, exit codes
a caller marked retryable) usually mean the master connection went bad,
so each retry tears it down, waits, and builds a fresh one first.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .config import HostInfo
from .errors import SSHWrapperError
from .session.master import MasterSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(host_info: HostInfo, attempt: int) -> float:
    """
    Seconds to sleep before retry number `attempt` (1-based).

    Fixed retry_duration unless retry_min_timeout or retry_max_timeout is
    set, in which case the delay doubles from the minimum up to the maximum.
    """
    low = host_info.retry_min_timeout
    high = host_info.retry_max_timeout
    if low is None and high is None:
        return host_info.retry_duration

    if low is None:
        low = host_info.retry_duration
    delay = low * 2 ** (attempt - 1)
    if high is not None:
        delay = min(delay, high)
    return max(delay, low)


async def with_retry(work: Callable[[], Awaitable[T]], session: MasterSession) -> T:
    """
    Run work, retrying retryable failures after reconnecting.

    A failed reconnect counts as an attempt like a failed run of work.

    Args:
        work: Zero-argument coroutine function, called once per attempt
        session: Master session to recycle between attempts

    Returns:
        Whatever work returns

    Raises:
        SSHWrapperError: non-retryable failure, or the last failure once
            the retry limit is used up (annotated with the attempt count)
        Exception: anything else work raises, unchanged
    """
    host_info = session.host_info
    max_retry = host_info.max_retry

    if max_retry <= 1:
        return await work()

    attempt = 0
    delay = 0.0
    while True:
        try:
            if attempt:
                await session.disconnect()
                await asyncio.sleep(delay)
                await session.connect()
            return await work()
        except SSHWrapperError as e:
            attempt += 1
            if not e.retryable:
                if attempt > 1:
                    raise e.annotate_attempts(attempt, max_retry)
                raise
            if attempt > max_retry:
                logger.warning(f"Giving up on {host_info.host} after {attempt} attempts: {e.message}")
                raise e.annotate_attempts(attempt, max_retry)

            delay = backoff_delay(host_info, attempt)
            logger.info(f"Retry {attempt}/{max_retry} for {host_info.host} in {delay}s: {e.message}")
