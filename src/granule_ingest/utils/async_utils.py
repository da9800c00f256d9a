"""
Async utilities: running blocking client libraries off the event loop and
polling for a condition with a deadline.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import threading
import time
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class TransferCancelled(Exception):
    """Raised inside a worker thread when the awaiting task was cancelled."""


class CancelFlag:
    """
    Cooperative cancellation for blocking transfers.

    The worker thread calls ``check()`` from its progress callback; once the
    awaiting task is cancelled the next check raises ``TransferCancelled``.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise TransferCancelled("transfer cancelled")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run ``func(*args, cancel=CancelFlag(), **kwargs)`` in a worker thread.

    If the awaiting task is cancelled, the flag is set and the worker is
    awaited until it stops at its next ``check()``. Only then is the
    cancellation re-raised, so callers never tear down a client that a worker
    thread is still using.
    """
    flag = CancelFlag()
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args, cancel=flag, **kwargs))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        flag.set()
        with contextlib.suppress(Exception):
            await asyncio.shield(worker)
        raise


async def wait_for_conditional_value(
    fn: Callable[[], Any],
    condition: Callable[[Any], bool],
    *,
    interval: float | Callable[[int], float] = 1.0,
    timeout: float = 5.0,
) -> Any:
    """
    Call ``fn`` until ``condition(result)`` is true, then return the result.

    ``fn`` may be sync or async. ``interval`` is either a fixed number of
    seconds or a function of the attempt number (for backoff).

    Raises:
        TimeoutError: if the condition is not met before ``timeout`` seconds.
        TypeError: if the arguments are invalid or ``condition`` does not
            return a bool.
    """
    if not callable(fn):
        raise TypeError("fn must be callable")
    if not callable(condition):
        raise TypeError("condition must be callable")
    if timeout <= 0:
        raise TypeError("timeout must be positive")

    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        value = fn()
        if inspect.isawaitable(value):
            value = await value

        met = condition(value)
        if not isinstance(met, bool):
            raise TypeError("condition must return a bool")
        if met:
            return value

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("wait_for_conditional_value timed out")
        delay = interval(attempt) if callable(interval) else interval
        attempt += 1
        # The last sleep is cut short so one final attempt lands on the deadline
        await asyncio.sleep(min(delay, remaining))


async def gather_ordered(coros: list[Awaitable[T]], *, limit: int) -> list[T]:
    """
    Await coroutines with at most ``limit`` in flight, preserving input order.

    The first failure cancels the remaining tasks and propagates.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def bounded(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    tasks = [asyncio.ensure_future(bounded(c)) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
