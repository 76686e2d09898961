"""Tests for the live-view streaming loop."""

import asyncio
import threading

import pytest

from dslr_photobooth.devices.events import PREVIEW_FRAME
from dslr_photobooth.devices.executor import DeviceExecutor
from dslr_photobooth.devices.preview import PreviewStreamer
from dslr_photobooth.drivers.cameras.types import (
    FatalDeviceError,
    NoDeviceError,
    TransientDeviceError,
)
from dslr_photobooth.observability import SessionStats
from dslr_photobooth.utils.image import encode_data_url
from tests.helpers import FAKE_JPEG, RecordingPublisher, wait_until


class ScriptedHandle:
    """Minimal handle whose poll results come from a script.

    Each script entry is returned, or raised if it is an exception. Once
    the script runs out every poll returns FAKE_JPEG.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.polls = 0

    def poll_preview_frame(self):
        self.polls += 1
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return FAKE_JPEG


class BlockingHandle:
    """Handle whose poll blocks until released, to catch late publishes."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def poll_preview_frame(self):
        self.entered.set()
        self.release.wait(timeout=5)
        return FAKE_JPEG


def _discard(event):
    pass


@pytest.fixture
def executor():
    ex = DeviceExecutor(timeout=1.0)
    yield ex
    ex.shutdown()


class TestPreviewStreamer:
    """Tests for PreviewStreamer."""

    def test_interval_must_be_positive(self, executor):
        with pytest.raises(ValueError, match="positive"):
            PreviewStreamer(ScriptedHandle(), executor, _discard, interval=0)

    @pytest.mark.asyncio
    async def test_publishes_frames(self, executor):
        publisher = RecordingPublisher()
        stats = SessionStats()
        streamer = PreviewStreamer(
            ScriptedHandle(), executor, publisher.publish, interval=0.01, stats=stats
        )
        streamer.start()
        await wait_until(lambda: len(publisher.events) >= 3)
        await streamer.stop()

        assert all(e.name == PREVIEW_FRAME for e in publisher.events)
        assert publisher.events[0].data == encode_data_url(FAKE_JPEG)
        assert streamer.frames_published == len(publisher.events)
        assert stats.get_summary().preview_frames == len(publisher.events)

    @pytest.mark.asyncio
    async def test_empty_and_transient_polls_skip_tick(self, executor):
        """Verifies None frames and transient errors are skipped, not fatal.

        Arrangement:
        1. Script: None, TransientDeviceError, then frames.

        Assertion Strategy:
        - Loop keeps running and publishes later frames.
        - on_fatal never called; one preview error counted.
        """
        handle = ScriptedHandle(None, TransientDeviceError("not ready"))
        publisher = RecordingPublisher()
        fatal = []
        stats = SessionStats()
        streamer = PreviewStreamer(
            handle, executor, publisher.publish, 0.01, fatal.append, stats
        )
        streamer.start()
        await wait_until(lambda: len(publisher.events) >= 1)
        await streamer.stop()

        assert handle.polls >= 3
        assert fatal == []
        assert stats.get_summary().preview_errors == 1

    @pytest.mark.parametrize("error", [FatalDeviceError("usb"), NoDeviceError("gone")])
    @pytest.mark.asyncio
    async def test_fatal_poll_ends_loop(self, executor, error):
        publisher = RecordingPublisher()
        fatal = []
        streamer = PreviewStreamer(
            ScriptedHandle(error), executor, publisher.publish, 0.01, fatal.append
        )
        streamer.start()
        await wait_until(lambda: not streamer.is_running)
        assert fatal == [error]
        assert publisher.events == []
        await streamer.stop()

    @pytest.mark.asyncio
    async def test_hung_poll_is_fatal(self):
        handle = BlockingHandle()
        executor = DeviceExecutor(timeout=0.05)
        fatal = []
        streamer = PreviewStreamer(handle, executor, _discard, 0.01, fatal.append)
        streamer.start()
        await wait_until(lambda: bool(fatal))
        handle.release.set()
        executor.shutdown()
        assert type(fatal[0]).__name__ == "DeviceTimeoutError"

    @pytest.mark.asyncio
    async def test_no_frame_after_stop_with_poll_in_flight(self, executor):
        """Verifies stop() drops the result of a poll still in the driver.

        Arrangement:
        1. Handle blocked inside poll_preview_frame.

        Action:
        stop() while blocked, then let the driver return.

        Assertion Strategy:
        Nothing is published after stop() returned.
        """
        handle = BlockingHandle()
        publisher = RecordingPublisher()
        streamer = PreviewStreamer(handle, executor, publisher.publish, 0.01)
        streamer.start()
        assert await asyncio.to_thread(handle.entered.wait, 2)

        await streamer.stop()
        handle.release.set()
        await asyncio.sleep(0.05)

        assert publisher.events == []
        assert not streamer.is_running

    @pytest.mark.asyncio
    async def test_double_start_rejected(self, executor):
        streamer = PreviewStreamer(ScriptedHandle(), executor, _discard, 0.01)
        streamer.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                streamer.start()
        finally:
            await streamer.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, executor):
        await PreviewStreamer(ScriptedHandle(), executor, _discard, 0.01).stop()
