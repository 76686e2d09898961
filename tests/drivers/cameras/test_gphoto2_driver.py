"""Unit tests for the gphoto2 command-line camera driver.

subprocess.run is patched throughout; no gphoto2 binary or camera needed.
"""

import asyncio
import subprocess
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from dslr_photobooth.devices.dispatcher import CaptureDispatcher
from dslr_photobooth.devices.events import CAPTURE_READY
from dslr_photobooth.drivers.cameras.gphoto2 import (
    GPhoto2CameraDriver,
    GPhoto2CameraHandle,
    GPhoto2File,
    classify_failure,
    parse_abilities,
    parse_auto_detect,
)
from dslr_photobooth.drivers.cameras.types import (
    ALL_CAPABILITIES,
    CameraDriver,
    CameraHandle,
    Capability,
    DeviceBusyError,
    DeviceDescriptor,
    DeviceError,
    DeviceEventKind,
    DeviceTimeoutError,
    FatalDeviceError,
    NoDeviceError,
    OpenFailedError,
    UnsupportedOperationError,
    UnsupportedPropertyError,
)
from tests.helpers import (
    FAKE_JPEG,
    RecordingPublisher,
    assert_implements_protocol,
    wait_until,
)

RUN = "dslr_photobooth.drivers.cameras.gphoto2.subprocess.run"

AUTO_DETECT = """Model                          Port
----------------------------------------------------------
Canon EOS 2000D                usb:001,004
"""

ABILITIES = """Abilities for camera             : Canon EOS 2000D
Serial port support              : no
USB support                      : yes
Capture choices                  :
                                 : Image capture
                                 : Preview
Configuration support            : yes
Delete selected files on camera  : yes
"""

CAPTURE_OUTPUT = """New file is in location /store_00020001/DCIM/100CANON/IMG_0042.JPG on the camera
Saving file as {staged}
Deleting file /store_00020001/DCIM/100CANON/IMG_0042.JPG on the camera
"""

DESCRIPTOR = DeviceDescriptor("gphoto2:usb:001,004", "Canon EOS 2000D", "usb:001,004")


def completed(stdout: str = "", returncode: int = 0, stderr: str = ""):
    return subprocess.CompletedProcess(["gphoto2"], returncode, stdout, stderr)


@pytest.fixture
def driver():
    return GPhoto2CameraDriver(command_timeout=5.0, capture_timeout=10.0)


@pytest.fixture
def handle(driver):
    h = GPhoto2CameraHandle(driver, DESCRIPTOR, ALL_CAPABILITIES)
    yield h
    h.close()


# =============================================================================
# Parsing
# =============================================================================


class TestParsing:
    """Tests for auto-detect / abilities parsing and failure classification."""

    def test_parse_auto_detect(self):
        [device] = parse_auto_detect(AUTO_DETECT)
        assert device.name == "Canon EOS 2000D"
        assert device.port == "usb:001,004"
        assert device.device_id == "gphoto2:usb:001,004"

    def test_parse_auto_detect_empty_table(self):
        header_only = "Model    Port\n-----------------\n"
        assert parse_auto_detect(header_only) == []

    def test_parse_auto_detect_multiple(self):
        output = AUTO_DETECT + "Nikon DSC D3200 (PTP mode)     usb:001,007\n"
        ports = [d.port for d in parse_auto_detect(output)]
        assert ports == ["usb:001,004", "usb:001,007"]

    def test_parse_abilities(self):
        assert parse_abilities(ABILITIES) == ALL_CAPABILITIES

    def test_parse_abilities_capture_only(self):
        output = "Capture choices : \n : Image capture\nConfiguration support : no\n"
        assert parse_abilities(output) == frozenset({Capability.CAPTURE})

    def test_parse_abilities_unrecognised_defaults_to_all(self):
        assert parse_abilities("garbage") == ALL_CAPABILITIES

    @pytest.mark.parametrize(
        ("output", "expected"),
        [
            ("*** Error: Could not claim the USB device ***", OpenFailedError),
            ("*** Error (-110: 'I/O in progress') ***", DeviceBusyError),
            ("*** Error: No camera found. ***", NoDeviceError),
            ("*** Error (-1: 'Unspecified error') ***", FatalDeviceError),
        ],
    )
    def test_classify_failure(self, output, expected):
        error = classify_failure(output)
        assert type(error) is expected
        assert str(error) == output

    def test_classify_failure_default(self):
        assert type(classify_failure("odd", DeviceBusyError)) is DeviceBusyError
        assert str(classify_failure("")) == "gphoto2 failed"


# =============================================================================
# Driver
# =============================================================================


class TestGPhoto2Driver:
    """Tests for discover/open command lines and error mapping."""

    def test_discover(self, driver):
        with patch(RUN, return_value=completed(AUTO_DETECT)) as run:
            devices = driver.discover()
        assert [d.port for d in devices] == ["usb:001,004"]
        args, kwargs = run.call_args
        assert args[0] == ["gphoto2", "--auto-detect"]
        assert kwargs["timeout"] == 5.0

    def test_discover_timeout(self, driver):
        with patch(RUN, side_effect=subprocess.TimeoutExpired("gphoto2", 5.0)):
            with pytest.raises(DeviceTimeoutError, match="timed out"):
                driver.discover()

    def test_missing_binary(self, driver):
        with patch(RUN, side_effect=FileNotFoundError("gphoto2")):
            with pytest.raises(NoDeviceError, match="executable not found"):
                driver.discover()

    def test_open_runs_summary_then_abilities(self, driver):
        """Verifies open probes the port and derives capabilities.

        Arrangement:
        1. summary succeeds, abilities lists capture + preview + config.

        Assertion Strategy:
        - Both commands target the descriptor's port.
        - Returned handle advertises every capability.
        """
        with patch(
            RUN, side_effect=[completed("Camera summary:"), completed(ABILITIES)]
        ) as run:
            handle = driver.open(DESCRIPTOR)
        try:
            commands = [c.args[0] for c in run.call_args_list]
            assert commands == [
                ["gphoto2", "--port", "usb:001,004", "--summary"],
                ["gphoto2", "--port", "usb:001,004", "--abilities"],
            ]
            assert handle.capabilities == ALL_CAPABILITIES
        finally:
            handle.close()

    def test_open_claim_failure(self, driver):
        failure = completed(returncode=1, stderr="Could not claim the USB device")
        with patch(RUN, return_value=failure):
            with pytest.raises(OpenFailedError):
                driver.open(DESCRIPTOR)

    def test_open_unknown_error_is_open_failed(self, driver):
        with patch(RUN, return_value=completed(returncode=1, stderr="PTP I/O error")):
            with pytest.raises(OpenFailedError):
                driver.open(DESCRIPTOR)

    def test_protocols(self, driver, handle):
        assert_implements_protocol(driver, CameraDriver)
        assert_implements_protocol(handle, CameraHandle)


# =============================================================================
# Handle
# =============================================================================


class TestGPhoto2Handle:
    """Tests for configure, live view, capture and close."""

    def test_configure_translates_properties(self, handle):
        with patch(RUN, return_value=completed()) as run:
            handle.configure({"save-destination": "host", "white-balance": "fluorescent"})
        commands = [c.args[0][-1] for c in run.call_args_list]
        assert commands == ["capturetarget=Internal RAM", "whitebalance=Fluorescent"]

    def test_configure_collects_rejections(self, handle):
        """Unknown keys and camera refusals both end up in the error."""
        responses = [completed(returncode=1, stderr="Bad value"), completed()]
        with patch(RUN, side_effect=responses):
            with pytest.raises(UnsupportedPropertyError) as exc_info:
                handle.configure(
                    {
                        "image-quality": "high",
                        "iso": "800",
                        "save-destination": "host",
                    }
                )
        assert exc_info.value.properties == ("image-quality", "iso")

    def test_configure_fatal_propagates(self, handle):
        with patch(RUN, side_effect=subprocess.TimeoutExpired("gphoto2", 5.0)):
            with pytest.raises(DeviceTimeoutError):
                handle.configure({"save-destination": "host"})

    def test_preview_reads_frame_file(self, handle):
        def fake_run(command, **kwargs):
            Path(command[command.index("--filename") + 1]).write_bytes(FAKE_JPEG)
            return completed()

        assert handle.poll_preview_frame() is None
        handle.start_preview()
        with patch(RUN, side_effect=fake_run) as run:
            assert handle.poll_preview_frame() == FAKE_JPEG
        assert "--capture-preview" in run.call_args.args[0]

    def test_preview_failure_is_busy_by_default(self, handle):
        handle.start_preview()
        with patch(RUN, return_value=completed(returncode=1, stderr="Canon busy")):
            with pytest.raises(DeviceBusyError):
                handle.poll_preview_frame()

    def test_preview_unsupported(self, driver):
        blind = GPhoto2CameraHandle(driver, DESCRIPTOR, frozenset({Capability.CAPTURE}))
        try:
            with pytest.raises(UnsupportedOperationError):
                blind.start_preview()
        finally:
            blind.close()

    def test_capture_emits_file_created(self, handle, tmp_path):
        """Verifies a capture announces the staged file with its camera path.

        Arrangement:
        1. Fake gphoto2 writes the staged JPEG and prints the usual lines.

        Action:
        trigger_capture() and wait for the sink.

        Assertion Strategy:
        - One FILE_CREATED keyed by capture number and on-camera path.
        - download() moves the staged file into the image directory.
        """
        staged = handle._staging / "IMG_0042.JPG"

        def fake_run(command, **kwargs):
            staged.write_bytes(FAKE_JPEG)
            return completed(CAPTURE_OUTPUT.format(staged=staged))

        events = []
        done = threading.Event()

        def sink(event):
            events.append(event)
            done.set()

        handle.register_event_sink(sink)
        with patch(RUN, side_effect=fake_run):
            handle.trigger_capture()
            assert done.wait(timeout=2)

        [event] = events
        assert event.kind is DeviceEventKind.FILE_CREATED
        assert event.file.key == "1:/store_00020001/DCIM/100CANON/IMG_0042.JPG"
        local = event.file.download(tmp_path)
        assert local.read_bytes() == FAKE_JPEG
        assert not staged.exists()

    def test_capture_failure_reports_fault(self, handle):
        events = []
        done = threading.Event()
        handle.register_event_sink(lambda e: (events.append(e), done.set()))
        with patch(RUN, side_effect=subprocess.TimeoutExpired("gphoto2", 10.0)):
            handle.trigger_capture()
            assert done.wait(timeout=2)
        assert events[0].kind is DeviceEventKind.DEVICE_FAULT

    def test_capture_while_capturing_is_busy(self, handle):
        release = threading.Event()

        def slow_run(command, **kwargs):
            release.wait(timeout=2)
            return completed()

        with patch(RUN, side_effect=slow_run):
            handle.trigger_capture()
            with pytest.raises(DeviceBusyError):
                handle.trigger_capture()
            release.set()
            handle._capture_thread.join(timeout=2)

    def test_close_is_idempotent(self, handle):
        staging = handle._staging
        handle.close()
        handle.close()
        assert not staging.exists()
        with pytest.raises(FatalDeviceError):
            handle.trigger_capture()


class TestGPhoto2File:
    """Tests for GPhoto2File."""

    def test_key_defaults_to_name(self, tmp_path):
        staged = tmp_path / "IMG_0001.JPG"
        assert GPhoto2File(staged).key == "IMG_0001.JPG"

    def test_download_of_missing_file(self, tmp_path):
        with pytest.raises(DeviceError, match="gone"):
            GPhoto2File(tmp_path / "nope.JPG").download(tmp_path / "images")


# =============================================================================
# Shared USB port
# =============================================================================

INTERNAL_RAM_OUTPUT = """New file is in location /capt0000.jpg on the camera
Saving file as {staged}
Deleting file /capt0000.jpg on the camera
"""

CLAIM_FAILURE = "*** Error: Could not claim the USB device ***"
RETRY_DELAY = "dslr_photobooth.drivers.cameras.gphoto2.CLAIM_RETRY_DELAY"


def internal_ram_capture(command, **kwargs):
    """Fake gphoto2 capture into camera RAM: always reports /capt0000.jpg."""
    pattern = command[command.index("--filename") + 1]
    staged = Path(pattern.replace("%f.%C", "capt0000.jpg"))
    staged.write_bytes(FAKE_JPEG)
    return completed(INTERNAL_RAM_OUTPUT.format(staged=staged))


def recording_sink():
    events = []
    done = threading.Event()

    def sink(event):
        events.append(event)
        done.set()

    return sink, events, done


class TestGPhoto2SharedPort:
    """Live view and capture on one port, one gphoto2 process at a time."""

    @pytest.mark.asyncio
    async def test_repeated_camera_path_dispatched_per_capture(self, handle, tmp_path):
        """Verifies every Internal RAM capture reaches capture-ready.

        Arrangement:
        1. Fake gphoto2 reports /capt0000.jpg for every shot.
        2. Handle events feed a running CaptureDispatcher.

        Action:
        Two captures, one after the other.

        Assertion Strategy:
        - Two capture-ready events.
        - Two distinct files in the image directory.
        """
        publisher = RecordingPublisher()
        dispatcher = CaptureDispatcher(tmp_path / "images", publisher.publish)
        dispatcher.start()
        handle.register_event_sink(dispatcher.submit)
        try:
            with patch(RUN, side_effect=internal_ram_capture):
                for expected in (1, 2):
                    handle.trigger_capture()
                    await wait_until(
                        lambda n=expected: len(publisher.named(CAPTURE_READY)) == n
                    )
                    await asyncio.to_thread(handle._capture_thread.join, 2)
        finally:
            await dispatcher.stop()

        assert sorted(p.name for p in dispatcher.image_dir.iterdir()) == [
            "0001-capt0000.jpg",
            "0002-capt0000.jpg",
        ]

    def test_capture_keys_differ_for_same_camera_path(self, handle):
        sink, events, done = recording_sink()
        handle.register_event_sink(sink)
        with patch(RUN, side_effect=internal_ram_capture):
            for _ in range(2):
                done.clear()
                handle.trigger_capture()
                assert done.wait(timeout=2)
                handle._capture_thread.join(timeout=2)
        assert [e.file.key for e in events] == ["1:/capt0000.jpg", "2:/capt0000.jpg"]

    def test_preview_polls_do_not_starve_capture(self, handle):
        """Verifies a capture lands while live view polls the same port.

        Arrangement:
        1. Fake gphoto2 with a single USB claim: a second concurrent
           process fails with "Could not claim the USB device".
        2. A thread polls live view continuously.

        Action:
        trigger_capture() once frames are flowing.

        Assertion Strategy:
        - No command ever hit a claim failure.
        - The capture is announced as FILE_CREATED.
        - Polls during the capture report busy instead of queueing.
        """
        usb = threading.Lock()
        claim_failures = []

        def single_claim_run(command, **kwargs):
            if not usb.acquire(blocking=False):
                claim_failures.append(command)
                return completed(returncode=1, stderr=CLAIM_FAILURE)
            try:
                if "--capture-image-and-download" in command:
                    time.sleep(0.1)
                    return internal_ram_capture(command)
                Path(command[command.index("--filename") + 1]).write_bytes(FAKE_JPEG)
                time.sleep(0.01)
                return completed()
            finally:
                usb.release()

        outcomes = []
        first_frame = threading.Event()
        stop = threading.Event()

        def poll_loop():
            while not stop.is_set():
                try:
                    frame = handle.poll_preview_frame()
                except DeviceBusyError:
                    outcomes.append("busy")
                else:
                    outcomes.append(frame)
                    first_frame.set()
                time.sleep(0.005)

        sink, events, done = recording_sink()
        handle.register_event_sink(sink)
        handle.start_preview()
        with patch(RUN, side_effect=single_claim_run):
            poller = threading.Thread(target=poll_loop)
            poller.start()
            try:
                assert first_frame.wait(timeout=2)
                handle.trigger_capture()
                assert done.wait(timeout=2)
            finally:
                stop.set()
                poller.join(timeout=2)

        assert claim_failures == []
        assert [e.kind for e in events] == [DeviceEventKind.FILE_CREATED]
        assert "busy" in outcomes

    def test_poll_during_capture_is_busy(self, handle):
        release = threading.Event()

        def slow_capture(command, **kwargs):
            release.wait(timeout=2)
            return completed()

        handle.start_preview()
        with patch(RUN, side_effect=slow_capture) as run:
            handle.trigger_capture()
            try:
                with pytest.raises(DeviceBusyError, match="paused"):
                    handle.poll_preview_frame()
            finally:
                release.set()
                handle._capture_thread.join(timeout=2)
        assert run.call_count == 1

    def test_claim_failure_retried_once(self, handle):
        responses = iter([completed(returncode=1, stderr=CLAIM_FAILURE)])

        def claim_then_capture(command, **kwargs):
            return next(responses, None) or internal_ram_capture(command)

        sink, events, done = recording_sink()
        handle.register_event_sink(sink)
        with patch(RETRY_DELAY, 0), patch(RUN, side_effect=claim_then_capture) as run:
            handle.trigger_capture()
            assert done.wait(timeout=2)
        assert run.call_count == 2
        assert events[0].kind is DeviceEventKind.FILE_CREATED

    def test_persistent_claim_failure_reports_fault(self, handle):
        sink, events, done = recording_sink()
        handle.register_event_sink(sink)
        failure = completed(returncode=1, stderr=CLAIM_FAILURE)
        with patch(RETRY_DELAY, 0), patch(RUN, return_value=failure) as run:
            handle.trigger_capture()
            assert done.wait(timeout=2)
        assert run.call_count == 2
        assert events[0].kind is DeviceEventKind.DEVICE_FAULT
        assert "claim" in events[0].detail
