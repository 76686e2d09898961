"""Capture event dispatcher.

Registered as the camera's event sink. Driver threads push notifications
through ``submit``; they cross into the event loop over a bounded queue
that preserves arrival order, and a single consumer task handles them
one at a time:

    FILE_CREATED / DOWNLOAD_REQUESTED -> download -> read -> data URL
                                      -> one ``capture-ready`` event
    DEVICE_FAULT                      -> ``on_fault`` (session recovers)
    PROPERTY_CHANGED                  -> ignored

Both image notifications mean the same thing, and SDKs send both for a
single shot, so each file key is dispatched at most once. The key is
marked before the download starts: a capture whose download fails is
dropped, never retried by a later duplicate notification.

Dispatch failures stay here. They are logged, counted and reported to
``on_failure`` with the current failure streak; the session decides
whether a streak is worth a recovery.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

from dslr_photobooth.devices.events import CAPTURE_READY, OutboundEvent
from dslr_photobooth.drivers.cameras.types import DeviceEvent, DeviceEventKind
from dslr_photobooth.observability import SessionStats, get_logger
from dslr_photobooth.utils.image import read_data_url

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 32
DEFAULT_DEDUP_WINDOW = 256
DEFAULT_DOWNLOAD_TIMEOUT = 30.0

__all__ = ["CaptureDispatcher"]


class CaptureDispatcher:
    """Turns camera file notifications into ``capture-ready`` events."""

    def __init__(
        self,
        image_dir: Path,
        publish: Callable[[OutboundEvent], None],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        on_fault: Callable[[DeviceEvent], None] | None = None,
        on_failure: Callable[[BaseException, int], None] | None = None,
        stats: SessionStats | None = None,
    ) -> None:
        """Configure the dispatcher; call ``start`` on the event loop to run it.

        Args:
            image_dir: Local directory for downloaded captures.
            publish: Receives each ``capture-ready`` event.
            queue_size: Capacity of the notification channel. Events
                arriving while it is full are dropped with a warning.
            dedup_window: Number of recent file keys remembered.
            download_timeout: Bound on download plus read-back.
            on_fault: Receives DEVICE_FAULT notifications.
            on_failure: Receives each dispatch error with the number of
                consecutive failures so far.
            stats: Dispatch counters and timings.
        """
        self.image_dir = image_dir
        self._publish = publish
        self._queue_size = queue_size
        self._download_timeout = download_timeout
        self._on_fault = on_fault
        self._on_failure = on_failure
        self._stats = stats
        self._seen_order: deque[str] = deque(maxlen=dedup_window)
        self._seen: set[str] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[DeviceEvent] | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = True
        self.consecutive_failures = 0
        self.dispatched = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Create the image directory and start consuming notifications."""
        if self.is_running:
            raise RuntimeError("Capture dispatcher already running")
        self.image_dir.mkdir(parents=True, exist_ok=True)
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._closed = False
        self._task = self._loop.create_task(self._consume(), name="capture-dispatch")

    async def stop(self) -> None:
        """Close the channel; queued and in-flight notifications are dropped."""
        self._closed = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
        self._queue = None

    def submit(self, event: DeviceEvent) -> None:
        """Event sink entry point; safe to call from any thread."""
        loop = self._loop
        if self._closed or loop is None:
            logger.debug("Device event after channel closed", kind=event.kind.value)
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError:
            # Loop already closed during interpreter shutdown.
            logger.debug("Device event after loop closed", kind=event.kind.value)

    def _enqueue(self, event: DeviceEvent) -> None:
        if self._closed or self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Device event channel full, dropping event",
                kind=event.kind.value,
                capacity=self._queue_size,
            )

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failing publisher or callback must not end the channel.
                logger.error(
                    "Device event handling failed",
                    kind=event.kind.value,
                    error=str(e) or type(e).__name__,
                    error_type=type(e).__name__,
                )

    def _remember(self, key: str) -> bool:
        """Record ``key``; False if it was already seen."""
        if key in self._seen:
            return False
        if len(self._seen_order) == self._seen_order.maxlen:
            self._seen.discard(self._seen_order[0])
        self._seen_order.append(key)
        self._seen.add(key)
        return True

    async def handle(self, event: DeviceEvent) -> None:
        """Process one notification.

        Download errors are absorbed here; errors from ``publish`` and the
        callbacks propagate to the caller.
        """
        if event.kind is DeviceEventKind.DEVICE_FAULT:
            logger.error("Camera reported a fault", detail=event.detail)
            if self._on_fault is not None:
                self._on_fault(event)
            return
        if not event.is_image_ready or event.file is None:
            logger.debug("Ignoring device event", kind=event.kind.value)
            return

        camera_file = event.file
        if not self._remember(camera_file.key):
            logger.debug(
                "Duplicate capture notification ignored",
                file=camera_file.name,
                kind=event.kind.value,
            )
            return

        started = time.monotonic()
        try:
            local_path = await asyncio.wait_for(
                asyncio.to_thread(camera_file.download, self.image_dir),
                self._download_timeout,
            )
            payload = await asyncio.to_thread(read_data_url, local_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            self.consecutive_failures += 1
            if self._stats is not None:
                self._stats.record_dispatch(duration_ms, False, type(e).__name__)
            logger.error(
                "Capture dispatch failed",
                file=camera_file.name,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                consecutive_failures=self.consecutive_failures,
            )
            if self._on_failure is not None:
                self._on_failure(e, self.consecutive_failures)
            return

        if self._closed:
            return
        duration_ms = (time.monotonic() - started) * 1000
        self.consecutive_failures = 0
        self.dispatched += 1
        self._publish(OutboundEvent(CAPTURE_READY, payload))
        if self._stats is not None:
            self._stats.record_dispatch(duration_ms, True)
        logger.info(
            "Capture ready",
            file=camera_file.name,
            path=str(local_path),
            duration_ms=round(duration_ms, 1),
        )
