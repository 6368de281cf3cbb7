"""
talos_hyperv/utils/async_retry.py

Two retry primitives used by every wait point in the lifecycle:

 - `async_retry`: decorator that re-runs a failing coroutine a fixed number of
   times (used for flaky external commands).
 - `poll_until`: deadline-bounded poll. Runs a check at a fixed interval until
   it returns a non-None value, raising a caller-chosen PollTimeout subclass
   when the deadline passes. Checks an optional cancellation event on every
   iteration so an operator abort stops cleanly between checks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, Optional, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

from talos_hyperv.errors import PollTimeout

P = ParamSpec("P")
R = TypeVar("R")
T = TypeVar("T")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    Args:
        retries: Maximum number of total attempts. Values below 1 mean one attempt.
        delay: Seconds to sleep between attempts.
        retry_on: Exception types that trigger another attempt; anything else propagates.
        noisy: If True, log each failed attempt at WARNING instead of DEBUG.

    Returns:
        A decorator producing a wrapper that re-raises the last exception once
        all attempts are exhausted.
    """
    attempts = max(1, retries)
    log = logger.warning if noisy else logger.debug

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    log(
                        "Attempt %d/%d of %s failed: %s",
                        attempt,
                        attempts,
                        func.__qualname__,
                        exc,
                    )
                    if attempt == attempts:
                        raise
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        wrapper.__qualname__ = func.__qualname__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator


async def poll_until(
    check: Callable[[], Coroutine[Any, Any, Optional[T]]],
    *,
    interval: float,
    timeout: float,
    subject: str,
    error: Type[PollTimeout] = PollTimeout,
    cancel: Optional[asyncio.Event] = None,
    detail: str = "",
) -> T:
    """
    Call `check` every `interval` seconds until it returns something other than None.

    Exceptions raised by the check count as a failed attempt and are retried;
    the last one is chained onto the timeout error.

    Args:
        check: Zero-argument coroutine function returning a value or None.
        interval: Seconds between attempts.
        timeout: Overall deadline in seconds. The check always runs at least once.
        subject: Name used in the timeout message (a VM or node name).
        error: PollTimeout subclass to raise on deadline.
        cancel: If set, checked before each attempt; raises asyncio.CancelledError.
        detail: Extra context appended to the timeout message.

    Returns:
        The first non-None check result.

    Raises:
        error: If the deadline passes first.
        asyncio.CancelledError: If `cancel` is set.
    """
    deadline = time.monotonic() + timeout
    last_exc: Optional[BaseException] = None
    attempt = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError(f"Cancelled while waiting on '{subject}'")
        attempt += 1
        try:
            result = await check()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_exc = exc
            logger.debug("Poll %d for %s raised: %s", attempt, subject, exc)
        else:
            if result is not None:
                return result
            logger.debug("Poll %d for %s not ready yet", attempt, subject)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise error(subject, timeout, detail) from last_exc
        await asyncio.sleep(min(interval, remaining))
