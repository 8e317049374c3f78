"""Generic long-running operation poller.

Every provider path waits on cloud operations through ``poll_until_done``:
the stack waiter, the project creation/deletion waiters, and each
per-resource operation waiter. A wait ends in one of four ways:

1. The classifier reports success: the last fetched status is returned.
2. The classifier reports failure: OperationFailedError with every message
   the provider attached.
3. The overall timeout elapses: OperationTimeoutError.
4. The caller's cancellation event fires: OperationCancelledError, raised
   immediately rather than at the next tick.

Native task cancellation (asyncio.CancelledError) propagates untouched.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import OperationCancelledError, OperationFailedError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    """Classification of one fetched status."""

    outcome: PollOutcome
    status: str = ""
    messages: tuple[str, ...] = ()

    @classmethod
    def in_progress(cls, status: str = "") -> PollResult:
        return cls(PollOutcome.IN_PROGRESS, status)

    @classmethod
    def succeeded(cls, status: str = "") -> PollResult:
        return cls(PollOutcome.SUCCEEDED, status)

    @classmethod
    def failed(cls, status: str = "", messages: tuple[str, ...] = ()) -> PollResult:
        return cls(PollOutcome.FAILED, status, messages)


@dataclass(frozen=True)
class PollSettings:
    """Fixed poll interval and overall timeout, both in seconds."""

    interval_seconds: float
    timeout_seconds: float

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def run_with_deadline(
    awaitable: Awaitable[T],
    *,
    operation: str,
    timeout_seconds: float | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Await ``awaitable`` unless the deadline passes or cancellation fires first.

    Raises:
        OperationCancelledError: If ``cancel_event`` is set before completion.
        OperationTimeoutError: If ``timeout_seconds`` elapses first.
    """
    if cancel_event is not None and cancel_event.is_set():
        # Close a bare coroutine so it does not warn about never being awaited
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(operation)

    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Future[Any] | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()

    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelledError(operation)
    if task in done:
        return task.result()
    raise OperationTimeoutError(operation, timeout_seconds or 0)


async def poll_until_done(
    fetch: Callable[[], Awaitable[T]],
    classify: Callable[[T], PollResult],
    *,
    settings: PollSettings,
    operation: str,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Poll ``fetch`` until ``classify`` reports a terminal outcome.

    The status is checked once immediately, then every
    ``settings.interval_seconds`` until ``settings.timeout_seconds`` elapses.

    Args:
        fetch: Coroutine factory returning the current provider status.
        classify: Maps a fetched status to in-progress, success or failure.
        settings: Interval and overall timeout.
        operation: Human-readable name used in errors and logs.
        cancel_event: Optional cancellation signal.

    Returns:
        The status value that was classified as success.

    Raises:
        OperationFailedError: The provider reported a terminal failure.
        OperationTimeoutError: The overall timeout elapsed.
        OperationCancelledError: ``cancel_event`` fired.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.timeout_seconds
    attempts = 0

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.error(
                f"{operation} timed out",
                extra={"operation": operation, "timeout_seconds": settings.timeout_seconds},
            )
            raise OperationTimeoutError(operation, settings.timeout_seconds)

        try:
            current = await run_with_deadline(
                fetch(),
                operation=operation,
                timeout_seconds=remaining,
                cancel_event=cancel_event,
            )
        except OperationTimeoutError:
            raise OperationTimeoutError(operation, settings.timeout_seconds) from None
        attempts += 1

        result = classify(current)
        if result.outcome == PollOutcome.SUCCEEDED:
            logger.debug(
                "Operation reached terminal success",
                extra={"operation": operation, "status": result.status, "attempts": attempts},
            )
            return current
        if result.outcome == PollOutcome.FAILED:
            logger.warning(
                "Operation reached terminal failure",
                extra={"operation": operation, "status": result.status, "attempts": attempts},
            )
            messages = result.messages or ((result.status,) if result.status else ())
            raise OperationFailedError(operation, messages)

        sleep_for = min(settings.interval_seconds, max(deadline - loop.time(), 0))
        await run_with_deadline(
            asyncio.sleep(sleep_for),
            operation=operation,
            cancel_event=cancel_event,
        )
