"""Bounded execution of blocking device calls.

Camera drivers block: gphoto2 subprocesses, SDK calls that wait on USB
transfers. ``DeviceExecutor`` runs them on a small private thread pool
and bounds every call with a timeout. A call that does not return in
time raises ``DeviceTimeoutError``, which the session treats exactly
like a fatal device error.

A timed-out call keeps its worker thread until the driver returns (a
thread cannot be interrupted), so the session builds a fresh executor
for every acquisition and abandons the old one on teardown.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

from dslr_photobooth.drivers.cameras.types import DeviceTimeoutError
from dslr_photobooth.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DEVICE_TIMEOUT = 10.0


class DeviceExecutor:
    """Thread pool wrapper that turns hangs into DeviceTimeoutError.

    Example:
        executor = DeviceExecutor(timeout=5.0)
        devices = await executor.call(driver.discover, operation="discover")
    """

    def __init__(
        self,
        timeout: float = DEFAULT_DEVICE_TIMEOUT,
        max_workers: int = 4,
        name: str = "camera",
    ) -> None:
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-io"
        )
        self._closed = False

    def __repr__(self) -> str:
        return f"DeviceExecutor(timeout={self.timeout}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        return self._closed

    async def call(
        self,
        func: Callable[..., T],
        *args: Any,
        operation: str | None = None,
        timeout: float | None = None,
        on_abandoned: Callable[[T], None] | None = None,
    ) -> T:
        """Run ``func(*args)`` on the pool and await it with a time bound.

        Args:
            func: Blocking callable.
            *args: Positional arguments for ``func``.
            operation: Name used in errors and logs; defaults to func name.
            timeout: Override of the executor default, in seconds.
            on_abandoned: Called with the result if the call completes after
                the caller gave up (timeout or cancellation). Used to close
                a handle whose ``open`` finished too late.

        Returns:
            Whatever ``func`` returns.

        Raises:
            DeviceTimeoutError: ``func`` did not return in time.
            RuntimeError: The executor was shut down.
            Exception: Anything ``func`` raised, unchanged.
        """
        if self._closed:
            raise RuntimeError("Device executor is shut down")
        name = operation or getattr(func, "__name__", "device call")
        limit = self.timeout if timeout is None else timeout

        concurrent_future = self._pool.submit(functools.partial(func, *args))
        try:
            return await asyncio.wait_for(asyncio.wrap_future(concurrent_future), limit)
        except TimeoutError as e:
            self._abandon(concurrent_future, name, on_abandoned)
            logger.error("Device call timed out", operation=name, timeout_s=limit)
            raise DeviceTimeoutError(
                f"{name} did not return within {limit:.1f}s"
            ) from e
        except asyncio.CancelledError:
            self._abandon(concurrent_future, name, on_abandoned)
            raise

    @staticmethod
    def _abandon(
        future: Future[Any],
        operation: str,
        on_abandoned: Callable[[Any], None] | None,
    ) -> None:
        if on_abandoned is None:
            return

        def _late_result(done: Future[Any]) -> None:
            if done.cancelled() or done.exception() is not None:
                return
            logger.warning("Cleaning up late device result", operation=operation)
            on_abandoned(done.result())

        future.add_done_callback(_late_result)

    def shutdown(self) -> None:
        """Stop accepting work. Threads stuck in a driver are left behind."""
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)
