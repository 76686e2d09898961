"""Live-view streaming loop.

Polls the camera for a live-view frame on a fixed period and publishes
each frame as a ``preview-frame`` event. Transient poll failures are
logged and the tick is skipped; a fatal failure is handed to the
session through ``on_fatal`` and ends the loop. The loop never changes
session state itself.

``stop()`` cancels the polling task and waits for it, so once it
returns nothing more is published, even when a poll was still running
in a driver thread (its result is dropped).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from dslr_photobooth.devices.events import PREVIEW_FRAME, OutboundEvent
from dslr_photobooth.devices.executor import DeviceExecutor
from dslr_photobooth.drivers.cameras.types import (
    CameraHandle,
    FatalDeviceError,
    NoDeviceError,
)
from dslr_photobooth.observability import SessionStats, get_logger
from dslr_photobooth.utils.image import encode_data_url

logger = get_logger(__name__)

DEFAULT_PREVIEW_INTERVAL = 0.05

__all__ = ["DEFAULT_PREVIEW_INTERVAL", "PreviewStreamer"]


class PreviewStreamer:
    """At most one polling task per streamer; owned by the session.

    Example:
        streamer = PreviewStreamer(handle, executor, publisher.publish)
        streamer.start()
        ...
        await streamer.stop()  # no preview-frame after this returns
    """

    def __init__(
        self,
        handle: CameraHandle,
        executor: DeviceExecutor,
        publish: Callable[[OutboundEvent], None],
        interval: float = DEFAULT_PREVIEW_INTERVAL,
        on_fatal: Callable[[BaseException], None] | None = None,
        stats: SessionStats | None = None,
    ) -> None:
        """Bind the streamer to an open handle.

        Args:
            handle: Camera with live view already started.
            executor: Bounds each poll; a hang surfaces as a fatal error.
            publish: Receives each ``preview-frame`` event.
            interval: Poll period in seconds.
            on_fatal: Called once with the error that ended the loop.
            stats: Frame and error counters.
        """
        if interval <= 0:
            raise ValueError(f"Preview interval must be positive, got {interval}")
        self._handle = handle
        self._executor = executor
        self._publish = publish
        self.interval = interval
        self._on_fatal = on_fatal
        self._stats = stats
        self._task: asyncio.Task[None] | None = None
        self._stopped = True
        self.frames_published = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling on the running event loop."""
        if self.is_running:
            raise RuntimeError("Preview stream already running")
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="preview-stream"
        )
        logger.info("Preview stream started", interval_ms=int(self.interval * 1000))

    async def stop(self) -> None:
        """Cancel the polling task and wait until it has finished."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        logger.info("Preview stream stopped", frames=self.frames_published)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stopped:
            try:
                frame = await self._executor.call(
                    self._handle.poll_preview_frame, operation="poll_preview_frame"
                )
            except (FatalDeviceError, NoDeviceError) as e:
                logger.error(
                    "Preview stream lost the camera",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._stats is not None:
                    self._stats.record_preview_error(type(e).__name__)
                self._stopped = True
                if self._on_fatal is not None:
                    self._on_fatal(e)
                return
            except Exception as e:
                logger.warning(
                    "Preview frame skipped",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._stats is not None:
                    self._stats.record_preview_error(type(e).__name__)
            else:
                if frame and not self._stopped:
                    self._publish(OutboundEvent(PREVIEW_FRAME, encode_data_url(frame)))
                    self.frames_published += 1
                    if self._stats is not None:
                        self._stats.record_preview_frame()

            next_tick += self.interval
            delay = next_tick - loop.time()
            if delay < 0:
                # Poll overran the period; resynchronise instead of bursting.
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)
