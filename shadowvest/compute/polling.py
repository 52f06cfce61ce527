"""
Cancellable poll-until-predicate.

Fixed interval, bounded by an overall timeout. The loop does no logging;
callers report progress themselves.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from shadowvest.errors import ComputationCancelledError, ComputationTimeoutError

T = TypeVar("T")


class CancellationToken:
    """Lets a caller abandon a wait; wakes a sleeping poll immediately."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def poll_until(
    read: Callable[[], Awaitable[Optional[T]]],
    predicate: Callable[[T], bool],
    *,
    interval: float,
    timeout: float,
    label: str,
    cancel: Optional[CancellationToken] = None,
) -> T:
    """
    Call read() every interval seconds until predicate(state) holds.

    A None state means "not there yet". Errors raised by read() propagate.

    Raises:
        ComputationTimeoutError: timeout elapsed first
        ComputationCancelledError: cancel was triggered
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if cancel is not None and cancel.cancelled:
            raise ComputationCancelledError(label)

        state = await read()
        if state is not None and predicate(state):
            return state

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ComputationTimeoutError(label, timeout)

        delay = min(interval, remaining)
        if cancel is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(cancel.wait(), delay)
            except asyncio.TimeoutError:
                pass
