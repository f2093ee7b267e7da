from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
from datetime import timedelta
import functools
import inspect
import logging
import math
import threading
import time
from typing import Any, TypeVar
import weakref


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 0.1


class RateLimiterError(Exception):
    pass


class RateLimiterConfigError(RateLimiterError, ValueError):
    pass


class RateLimiterShutdownError(RateLimiterError, RuntimeError):
    pass


class AcquireCancelledError(RateLimiterError):
    pass


def _window_seconds(window: float | timedelta) -> float:
    if isinstance(window, timedelta):
        return window.total_seconds()
    try:
        return float(window)
    except (TypeError, ValueError) as exc:
        raise RateLimiterConfigError(f"window must be a number of seconds or a timedelta, got {window!r}") from exc


def _validate(limit: int, window: float | timedelta, poll_interval: float) -> tuple[int, float, float]:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise RateLimiterConfigError(f"limit must be an integer, got {limit!r}")
    if limit <= 0:
        raise RateLimiterConfigError("limit must be positive")
    window_seconds = _window_seconds(window)
    if not math.isfinite(window_seconds) or not 0 < window_seconds <= threading.TIMEOUT_MAX:
        raise RateLimiterConfigError(f"window must be a finite positive number of seconds, got {window!r}")
    if isinstance(poll_interval, bool) or not isinstance(poll_interval, (int, float)):
        raise RateLimiterConfigError(f"poll_interval must be a number of seconds, got {poll_interval!r}")
    if not math.isfinite(poll_interval) or not 0 < poll_interval <= threading.TIMEOUT_MAX:
        raise RateLimiterConfigError(f"poll_interval must be a finite positive number, got {poll_interval!r}")
    return limit, window_seconds, float(poll_interval)


def _reset_loop(limiter_ref: weakref.ref[RateLimiter], stop: threading.Event, window: float) -> None:
    # Only a weak reference is held so a forgotten limiter can be collected.
    next_tick = time.monotonic() + window
    while not stop.wait(max(0.0, next_tick - time.monotonic())):
        next_tick += window
        limiter = limiter_ref()
        if limiter is None:
            return
        limiter._reset()
        del limiter


class RateLimiter:
    """Fixed-window limiter shared by threads: at most ``limit`` admissions per ``window``.

    A daemon thread zeroes the counter every ``window`` seconds, starting at
    construction. Slots are consumed by :meth:`acquire` and are only freed by
    that reset, never by the caller.

    Waiters sleep on a condition variable which the reset notifies; they also
    re-check every ``poll_interval`` seconds. After :meth:`shutdown`, pending
    and future :meth:`acquire` calls raise :class:`RateLimiterShutdownError`.

    When a waiter is cancelled through its ``cancel`` event it raises
    :class:`AcquireCancelledError`. With ``shutdown_on_cancel=True`` the whole
    limiter is shut down first, for clients that treat a cancelled waiter as
    the client stopping.
    """

    def __init__(
        self,
        limit: int,
        window: float | timedelta,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        shutdown_on_cancel: bool = False,
        name: str = "crpt-rate-limit",
    ) -> None:
        self._limit, self._window, self._poll_interval = _validate(limit, window, poll_interval)
        self.shutdown_on_cancel = shutdown_on_cancel
        self.name = name
        self._count = 0
        self._cond = threading.Condition(threading.Lock())
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=_reset_loop,
            args=(weakref.ref(self), self._stop, self._window),
            name=f"{name}-reset",
            daemon=True,
        )
        self._finalizer = weakref.finalize(self, self._stop.set)
        self._thread.start()
        logger.info("%s started: %d per %.3fs", name, self._limit, self._window)

    def __enter__(self) -> RateLimiter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "active"
        return f"<RateLimiter {self.name} {self._limit}/{self._window}s {state}>"

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window(self) -> float:
        return self._window

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    @property
    def remaining(self) -> int:
        with self._cond:
            return self._limit - self._count

    def acquire(self, cancel: threading.Event | None = None) -> None:
        """Block until a slot in the current window is reserved."""
        with self._cond:
            while True:
                if self._stop.is_set():
                    raise RateLimiterShutdownError(f"{self.name} is shut down")
                if cancel is not None and cancel.is_set():
                    break
                if self._count < self._limit:
                    self._count += 1
                    logger.debug("%s admitted %d/%d", self.name, self._count, self._limit)
                    return
                self._cond.wait(self._poll_interval)

        logger.debug("%s acquire cancelled", self.name)
        if self.shutdown_on_cancel:
            self.shutdown()
        raise AcquireCancelledError(f"acquire on {self.name} was cancelled")

    def try_acquire(self) -> bool:
        with self._cond:
            if self._stop.is_set():
                raise RateLimiterShutdownError(f"{self.name} is shut down")
            if self._count < self._limit:
                self._count += 1
                return True
            return False

    def run(self, action: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Acquire a slot, then call ``action`` and hand back whatever it returns or raises."""
        self.acquire()
        return action(*args, **kwargs)

    def _reset(self) -> None:
        with self._cond:
            if self._stop.is_set():
                return
            admitted = self._count
            self._count = 0
            self._cond.notify_all()
        logger.debug("%s window reset after %d admissions", self.name, admitted)

    def shutdown(self) -> None:
        with self._cond:
            if self._stop.is_set():
                return
            self._stop.set()
            self._cond.notify_all()
        self._finalizer.detach()
        if self._thread is not threading.current_thread():
            self._thread.join()
        logger.info("%s shut down", self.name)


async def _async_reset_loop(limiter_ref: weakref.ref[AsyncRateLimiter], window: float) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time() + window
    while True:
        await asyncio.sleep(max(0.0, next_tick - loop.time()))
        next_tick += window
        limiter = limiter_ref()
        if limiter is None or limiter.closed:
            return
        await limiter._reset()
        del limiter


class AsyncRateLimiter:
    """Fixed-window limiter for coroutines sharing one event loop.

    Must be created inside a running loop: the reset task is scheduled on it
    immediately. Cancelling a task blocked in :meth:`acquire` propagates
    :class:`asyncio.CancelledError`; ``shutdown_on_cancel=True`` also shuts the
    limiter down before the cancellation is re-raised.
    """

    def __init__(
        self,
        limit: int,
        window: float | timedelta,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        shutdown_on_cancel: bool = False,
        name: str = "crpt-rate-limit",
    ) -> None:
        self._limit, self._window, self._poll_interval = _validate(limit, window, poll_interval)
        loop = asyncio.get_running_loop()
        self.shutdown_on_cancel = shutdown_on_cancel
        self.name = name
        self._count = 0
        self._closed = False
        self._cond = asyncio.Condition()
        self._task = loop.create_task(
            _async_reset_loop(weakref.ref(self), self._window),
            name=f"{name}-reset",
        )
        logger.info("%s started: %d per %.3fs", name, self._limit, self._window)

    async def __aenter__(self) -> AsyncRateLimiter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "active"
        return f"<AsyncRateLimiter {self.name} {self._limit}/{self._window}s {state}>"

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window(self) -> float:
        return self._window

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def count(self) -> int:
        # Single-threaded loop: plain reads cannot interleave with a reset.
        return self._count

    @property
    def remaining(self) -> int:
        return self._limit - self._count

    async def acquire(self) -> None:
        try:
            async with self._cond:
                while True:
                    if self._closed:
                        raise RateLimiterShutdownError(f"{self.name} is shut down")
                    if self._count < self._limit:
                        self._count += 1
                        logger.debug("%s admitted %d/%d", self.name, self._count, self._limit)
                        return
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._cond.wait(), self._poll_interval)
        except asyncio.CancelledError:
            logger.debug("%s acquire cancelled", self.name)
            if self.shutdown_on_cancel:
                self.shutdown()
            raise

    async def run(self, action: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await self.acquire()
        result = action(*args, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _reset(self) -> None:
        async with self._cond:
            admitted = self._count
            self._count = 0
            self._cond.notify_all()
        logger.debug("%s window reset after %d admissions", self.name, admitted)

    def shutdown(self) -> None:
        """Stop resets; waiters notice within one poll interval and raise."""
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        logger.info("%s shut down", self.name)

    async def aclose(self) -> None:
        self.shutdown()
        await asyncio.gather(self._task, return_exceptions=True)


def rate_limited(limiter: RateLimiter | AsyncRateLimiter) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorate a function so every call first takes a slot from ``limiter``."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if isinstance(limiter, AsyncRateLimiter):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                return await limiter.run(func, *args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return limiter.run(func, *args, **kwargs)

        return wrapper

    return decorator
