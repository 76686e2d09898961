"""Digital Twin Camera Driver - simulated tethered DSLR.

Behaves like a camera on a USB tether: discovery lists it, live view
returns small JPEG frames, and a capture writes a JPEG onto a simulated
memory card and announces it asynchronously from a driver thread with
a FILE_CREATED notification followed by a DOWNLOAD_REQUESTED for the
same file, the way vendor SDKs do.

Every failure mode the session controller has to survive can be
scripted through ``TwinFaults``: empty discovery, refused opens,
unsupported properties, transient and fatal live-view errors, hangs,
busy shutter, failing downloads and driver faults pushed through the
event sink.

Example:
    from dslr_photobooth.drivers.cameras.twin import (
        DigitalTwinCameraDriver,
        TwinFaults,
    )

    driver = DigitalTwinCameraDriver(faults=TwinFaults(open_failures=2))
    [descriptor] = driver.discover()
    handle = driver.open(descriptor)  # raises OpenFailedError twice first
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, final

import numpy as np

from dslr_photobooth.drivers.cameras.types import (
    ALL_CAPABILITIES,
    Capability,
    DeviceBusyError,
    DeviceDescriptor,
    DeviceError,
    DeviceEvent,
    DeviceEventKind,
    EventSink,
    FatalDeviceError,
    NoDeviceError,
    OpenFailedError,
    TransientDeviceError,
    UnsupportedOperationError,
    UnsupportedPropertyError,
)
from dslr_photobooth.observability import get_logger
from dslr_photobooth.utils.image import CV2ImageEncoder, ImageEncoder

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_CAMERAS",
    "SUPPORTED_PROPERTIES",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraHandle",
    "DigitalTwinConfig",
    "TwinFaults",
    "TwinFile",
]


# =============================================================================
# Configuration
# =============================================================================

_DEFAULT_JPEG_QUALITY = 90

# Canonical property name -> accepted values
SUPPORTED_PROPERTIES: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        "save-destination": frozenset({"host", "card", "both"}),
        "image-quality": frozenset({"high", "normal", "raw"}),
        "white-balance": frozenset(
            {"auto", "daylight", "shade", "cloudy", "tungsten", "fluorescent"}
        ),
    }
)

DEFAULT_CAMERAS: Sequence[DeviceDescriptor] = (
    DeviceDescriptor(
        device_id="twin:0",
        name="Digital Twin EOS (Simulated)",
        port="usb:twin,000",
        capabilities=ALL_CAPABILITIES,
    ),
)


@dataclass
class DigitalTwinConfig:
    """Image geometry and timing of the simulated camera."""

    preview_size: tuple[int, int] = (320, 212)  # width, height
    capture_size: tuple[int, int] = (1200, 800)
    card_dir: Path | None = None  # simulated memory card; temp dir if None
    notification_delay: float = 0.0  # seconds between capture and FILE_CREATED
    duplicate_notifications: bool = True  # also send DOWNLOAD_REQUESTED


@dataclass
class TwinFaults:
    """Scripted failures. Counters decrement as they are consumed."""

    discover_failures: int = 0  # discover() calls that find nothing
    open_failures: int = 0  # open() calls raising OpenFailedError
    unsupported_properties: frozenset[str] = frozenset()
    transient_poll_every: int = 0  # every Nth poll raises TransientDeviceError
    fatal_poll_after: int | None = None  # frames before polls become fatal
    hang_poll_seconds: float = 0.0  # each poll blocks this long
    capture_busy: bool = False
    download_failures: int = 0  # next N captured files fail to download


# =============================================================================
# Files
# =============================================================================


@final
class TwinFile:
    """A JPEG on the simulated memory card."""

    __slots__ = ("_name", "_key", "_source", "_fail_download")

    def __init__(self, source: Path, *, fail_download: bool = False) -> None:
        self._source = source
        self._name = source.name
        self._key = str(source)
        self._fail_download = fail_download

    @property
    def name(self) -> str:
        return self._name

    @property
    def key(self) -> str:
        return self._key

    def download(self, dest_dir: Path) -> Path:
        if self._fail_download:
            raise DeviceError(f"Transfer of {self._name} aborted by camera")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / self._name
        shutil.copyfile(self._source, target)
        return target

    def __repr__(self) -> str:
        return f"TwinFile({self._name!r})"


# =============================================================================
# Driver
# =============================================================================


@final
class DigitalTwinCameraDriver:
    """Digital twin camera driver for kiosks and tests without a camera.

    Tracks call counts (``discover_calls``, ``open_calls``) and every
    handle it opened so tests can assert on acquisition behaviour.

    Example:
        driver = DigitalTwinCameraDriver()
        handle = driver.open(driver.discover()[0])
        handle.start_preview()
        jpeg = handle.poll_preview_frame()
    """

    __slots__ = (
        "config",
        "faults",
        "_cameras",
        "_encoder",
        "_lock",
        "_present",
        "discover_calls",
        "open_calls",
        "handles",
    )

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Sequence[DeviceDescriptor] | None = None,
        faults: TwinFaults | None = None,
        encoder: ImageEncoder | None = None,
    ) -> None:
        """Create the simulated driver.

        Args:
            config: Frame geometry and notification timing.
            cameras: Devices discovery reports; one EOS-like body by default.
            faults: Failure script; no faults when None.
            encoder: JPEG renderer; OpenCV when None.
        """
        self.config = config or DigitalTwinConfig()
        self.faults = faults or TwinFaults()
        self._cameras: list[DeviceDescriptor] = list(
            cameras if cameras is not None else DEFAULT_CAMERAS
        )
        self._encoder = encoder
        self._lock = threading.Lock()
        self._present = True
        self.discover_calls = 0
        self.open_calls = 0
        self.handles: list[DigitalTwinCameraHandle] = []
        logger.info(
            "Digital twin camera driver initialized",
            num_cameras=len(self._cameras),
        )

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraDriver(cameras={len(self._cameras)}, "
            f"present={self._present})"
        )

    @property
    def encoder(self) -> ImageEncoder:
        if self._encoder is None:
            self._encoder = CV2ImageEncoder()
        return self._encoder

    @property
    def present(self) -> bool:
        return self._present

    def unplug(self) -> None:
        """Simulate pulling the USB cable: discovery empties, handles fail."""
        self._present = False
        logger.info("Digital twin camera unplugged")

    def plug(self) -> None:
        self._present = True
        logger.info("Digital twin camera plugged in")

    def discover(self) -> list[DeviceDescriptor]:
        with self._lock:
            self.discover_calls += 1
            if not self._present:
                return []
            if self.faults.discover_failures > 0:
                self.faults.discover_failures -= 1
                return []
            return list(self._cameras)

    def open(self, descriptor: DeviceDescriptor) -> DigitalTwinCameraHandle:
        with self._lock:
            self.open_calls += 1
            if not self._present or descriptor not in self._cameras:
                raise NoDeviceError(f"Camera {descriptor.device_id} not found")
            if self.faults.open_failures > 0:
                self.faults.open_failures -= 1
                raise OpenFailedError(
                    f"Could not claim {descriptor.port or descriptor.device_id}"
                )
            handle = DigitalTwinCameraHandle(self, descriptor)
            self.handles.append(handle)
        logger.info("Digital twin camera opened", device_id=descriptor.device_id)
        return handle


# =============================================================================
# Handle
# =============================================================================


@final
class DigitalTwinCameraHandle:
    """Opened simulated camera. Created by ``DigitalTwinCameraDriver.open``."""

    __slots__ = (
        "_driver",
        "_descriptor",
        "_lock",
        "_sink",
        "_closed",
        "_previewing",
        "_frame_count",
        "_poll_count",
        "_capture_count",
        "_card_dir",
        "_timers",
        "properties",
        "close_calls",
        "captures",
    )

    def __init__(
        self, driver: DigitalTwinCameraDriver, descriptor: DeviceDescriptor
    ) -> None:
        self._driver = driver
        self._descriptor = descriptor
        self._lock = threading.RLock()
        self._sink: EventSink | None = None
        self._closed = False
        self._previewing = False
        self._frame_count = 0
        self._poll_count = 0
        self._capture_count = 0
        self._card_dir = driver.config.card_dir or Path(
            tempfile.mkdtemp(prefix="dslr-twin-card-")
        )
        self._timers: list[threading.Timer] = []
        self.properties: dict[str, str] = {}
        self.close_calls = 0
        self.captures: list[TwinFile] = []

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraHandle({self._descriptor.device_id!r}, "
            f"closed={self._closed})"
        )

    @property
    def descriptor(self) -> DeviceDescriptor:
        return self._descriptor

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._descriptor.capabilities

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def previewing(self) -> bool:
        return self._previewing

    @property
    def sink(self) -> EventSink | None:
        return self._sink

    def _check_usable(self) -> None:
        if self._closed:
            raise FatalDeviceError("Camera handle is closed")
        if not self._driver.present:
            raise NoDeviceError("Camera disconnected")

    def configure(self, properties: Mapping[str, str]) -> None:
        with self._lock:
            self._check_usable()
            rejected: list[str] = []
            for name, value in properties.items():
                allowed = SUPPORTED_PROPERTIES.get(name)
                if (
                    name in self._driver.faults.unsupported_properties
                    or allowed is None
                    or value not in allowed
                ):
                    rejected.append(name)
                    continue
                self.properties[name] = value
        if rejected:
            raise UnsupportedPropertyError(rejected)

    def start_preview(self) -> None:
        with self._lock:
            self._check_usable()
            if Capability.PREVIEW not in self.capabilities:
                raise UnsupportedOperationError("Live view not supported")
            self._previewing = True

    def stop_preview(self) -> None:
        with self._lock:
            self._previewing = False

    def poll_preview_frame(self) -> bytes | None:
        faults = self._driver.faults
        if faults.hang_poll_seconds > 0:
            time.sleep(faults.hang_poll_seconds)
        with self._lock:
            self._check_usable()
            if not self._previewing:
                return None
            self._poll_count += 1
            if (
                faults.fatal_poll_after is not None
                and self._frame_count >= faults.fatal_poll_after
            ):
                raise FatalDeviceError("Live view driver stopped responding")
            if (
                faults.transient_poll_every
                and self._poll_count % faults.transient_poll_every == 0
            ):
                raise TransientDeviceError("Live view frame not ready")
            self._frame_count += 1
            frame_number = self._frame_count
        return self._render_preview(frame_number)

    def trigger_capture(self) -> None:
        with self._lock:
            self._check_usable()
            if Capability.CAPTURE not in self.capabilities:
                raise UnsupportedOperationError("Capture not supported")
            if self._driver.faults.capture_busy:
                raise DeviceBusyError("Shutter busy")
            self._capture_count += 1
            number = self._capture_count
            faults = self._driver.faults
            fail_download = faults.download_failures > 0
            if fail_download:
                faults.download_failures -= 1

        path = self._card_dir / f"IMG_{number:04d}.JPG"
        path.write_bytes(self._render_capture(number))
        twin_file = TwinFile(path, fail_download=fail_download)
        self.captures.append(twin_file)
        logger.debug("Digital twin shutter released", file=twin_file.name)

        timer = threading.Timer(
            self._driver.config.notification_delay, self._announce, (twin_file,)
        )
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def _announce(self, twin_file: TwinFile) -> None:
        self.emit(DeviceEvent(DeviceEventKind.FILE_CREATED, file=twin_file))
        if self._driver.config.duplicate_notifications:
            self.emit(DeviceEvent(DeviceEventKind.DOWNLOAD_REQUESTED, file=twin_file))

    def emit(self, event: DeviceEvent) -> None:
        """Deliver ``event`` to the registered sink, if any."""
        with self._lock:
            sink = self._sink
        if sink is not None:
            sink(event)

    def inject_fault(self, detail: str = "Driver fault") -> None:
        """Push a DEVICE_FAULT notification as the SDK would."""
        self.emit(DeviceEvent(DeviceEventKind.DEVICE_FAULT, detail=detail))

    def register_event_sink(self, sink: EventSink | None) -> None:
        with self._lock:
            self._sink = sink

    def close(self) -> None:
        with self._lock:
            self.close_calls += 1
            if self._closed:
                return
            self._closed = True
            self._previewing = False
            self._sink = None
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()
        logger.info("Digital twin camera closed", device_id=self._descriptor.device_id)

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _render_preview(self, frame_number: int) -> bytes:
        width, height = self._driver.config.preview_size
        ramp = np.linspace(0, 255, width, dtype=np.uint8)
        img: NDArray[Any] = np.zeros((height, width, 3), dtype=np.uint8)
        img[:, :, 0] = np.roll(ramp, frame_number * 4)
        img[:, :, 2] = 255 - img[:, :, 0]
        encoder = self._driver.encoder
        encoder.put_text(img, "LIVE VIEW", (10, 24), 0.6, (255, 255, 255), 1)
        encoder.put_text(img, f"#{frame_number}", (10, 48), 0.5, (255, 255, 255), 1)
        return encoder.encode_jpeg(img, quality=70)

    def _render_capture(self, number: int) -> bytes:
        width, height = self._driver.config.capture_size
        img: NDArray[Any] = np.full((height, width, 3), 230, dtype=np.uint8)
        img[::40, :] = (200, 200, 200)
        img[:, ::40] = (200, 200, 200)
        self._driver.encoder.put_text(
            img,
            f"DIGITAL TWIN - {self._descriptor.name} - shot {number}",
            (40, 80),
            1.2,
            (40, 40, 40),
            2,
        )
        return self._driver.encoder.encode_jpeg(img, quality=_DEFAULT_JPEG_QUALITY)
