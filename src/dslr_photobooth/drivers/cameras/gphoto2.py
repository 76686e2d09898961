"""gphoto2 camera driver - tethered DSLRs through the gphoto2 command line.

Every device operation is one bounded ``gphoto2`` invocation, so a hung
USB transfer becomes a ``DeviceTimeoutError`` instead of a stuck kiosk.
Captures run in a background thread with ``--capture-image-and-download``
into a per-handle staging directory; each saved file is announced to
the event sink as FILE_CREATED. Commands on one handle are serialised,
and live-view polls report busy while a capture is in flight.

Exit status and console output are mapped onto the device error
taxonomy by ``classify_failure``:

    "Could not claim the USB device"  -> OpenFailedError (another process
                                         holds the camera; reclaim helps)
    "I/O in progress" / "Device Busy" -> DeviceBusyError
    "No camera found" / "not found"   -> NoDeviceError
    subprocess.TimeoutExpired         -> DeviceTimeoutError

Example:
    driver = GPhoto2CameraDriver(command_timeout=10.0)
    for descriptor in driver.discover():
        print(descriptor.name, descriptor.port)
"""

from __future__ import annotations

import re
import shutil
import subprocess
import tempfile
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import final

from dslr_photobooth.drivers.cameras.types import (
    ALL_CAPABILITIES,
    Capability,
    DeviceBusyError,
    DeviceDescriptor,
    DeviceError,
    DeviceEvent,
    DeviceEventKind,
    DeviceTimeoutError,
    EventSink,
    FatalDeviceError,
    NoDeviceError,
    OpenFailedError,
    UnsupportedOperationError,
    UnsupportedPropertyError,
)
from dslr_photobooth.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "GPhoto2CameraDriver",
    "GPhoto2CameraHandle",
    "GPhoto2File",
    "PROPERTY_MAP",
    "classify_failure",
    "parse_abilities",
    "parse_auto_detect",
]

DEFAULT_BINARY = "gphoto2"
DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_CAPTURE_TIMEOUT = 30.0
CLAIM_RETRY_DELAY = 0.5

# Canonical property -> (gphoto2 config name, {canonical value: device value})
PROPERTY_MAP: Mapping[str, tuple[str, Mapping[str, str]]] = MappingProxyType(
    {
        "save-destination": (
            "capturetarget",
            {"host": "Internal RAM", "card": "Memory card"},
        ),
        "image-quality": (
            "imageformat",
            {
                "high": "Large Fine JPEG",
                "normal": "Large Normal JPEG",
                "raw": "RAW",
            },
        ),
        "white-balance": (
            "whitebalance",
            {
                "auto": "Auto",
                "daylight": "Daylight",
                "shade": "Shadow",
                "cloudy": "Cloudy",
                "tungsten": "Tungsten",
                "fluorescent": "Fluorescent",
            },
        ),
    }
)

_BUSY_MARKERS = ("I/O in progress", "Device Busy", "device is busy")
_CLAIM_MARKERS = ("Could not claim the USB device", "Could not claim interface")
_GONE_MARKERS = ("No camera found", "Could not detect any camera", "not found")

_SAVED_RE = re.compile(r"^Saving file as (?P<path>.+)$", re.MULTILINE)
_LOCATION_RE = re.compile(
    r"^New file is in location (?P<path>\S+) on the camera", re.MULTILINE
)


# =============================================================================
# Output parsing
# =============================================================================


def parse_auto_detect(output: str) -> list[DeviceDescriptor]:
    """Parse ``gphoto2 --auto-detect`` output.

    The first two lines are the ``Model / Port`` header and a dashed rule;
    each following line is ``<model>   usb:<bus>,<dev>``.

    Example:
        >>> parse_auto_detect(
        ...     "Model   Port\\n------\\nCanon EOS 2000D   usb:001,004\\n"
        ... )[0].port
        'usb:001,004'
    """
    devices: list[DeviceDescriptor] = []
    for line in output.strip().splitlines()[2:]:
        line = line.strip()
        if "usb:" not in line:
            continue
        model, _, port = line.rpartition("usb:")
        port = f"usb:{port.strip()}"
        devices.append(
            DeviceDescriptor(
                device_id=f"gphoto2:{port}",
                name=model.strip() or "Generic Camera",
                port=port,
            )
        )
    return devices


def parse_abilities(output: str) -> frozenset[Capability]:
    """Derive capabilities from ``gphoto2 --abilities``.

    Falls back to every capability when the output is not recognised,
    leaving the first real call to report what is missing.
    """
    found: set[Capability] = set()
    if re.search(r"Configuration support\s*:\s*yes", output):
        found.add(Capability.CONFIGURE)
    if re.search(r"^\s*:?\s*Preview\s*$", output, re.MULTILINE):
        found.add(Capability.PREVIEW)
    if re.search(r"^\s*:?\s*Image capture\s*$", output, re.MULTILINE):
        found.add(Capability.CAPTURE)
    return frozenset(found) if found else ALL_CAPABILITIES


def classify_failure(
    output: str, default: type[DeviceError] = FatalDeviceError
) -> DeviceError:
    """Map gphoto2 console output of a failed command to a DeviceError."""
    message = output.strip().splitlines()[-1] if output.strip() else "gphoto2 failed"
    if any(marker in output for marker in _CLAIM_MARKERS):
        return OpenFailedError(message)
    if any(marker in output for marker in _BUSY_MARKERS):
        return DeviceBusyError(message)
    if any(marker in output for marker in _GONE_MARKERS):
        return NoDeviceError(message)
    return default(message)


# =============================================================================
# Command runner
# =============================================================================


def _run(
    binary: str,
    args: Sequence[str],
    timeout: float,
    default_error: type[DeviceError] = FatalDeviceError,
) -> str:
    """Run gphoto2 and return combined output; raise DeviceError on failure."""
    command = [binary, *args]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise DeviceTimeoutError(
            f"{' '.join(command)} timed out after {timeout:.1f}s"
        ) from e
    except FileNotFoundError as e:
        raise NoDeviceError(f"{binary} executable not found") from e

    output = f"{result.stdout or ''}{result.stderr or ''}"
    if result.returncode != 0:
        raise classify_failure(output, default_error)
    return output


# =============================================================================
# Files
# =============================================================================


@final
class GPhoto2File:
    """A capture already transferred into the handle's staging directory."""

    __slots__ = ("_staged", "_key")

    def __init__(
        self, staged: Path, camera_path: str | None = None, sequence: int | None = None
    ) -> None:
        self._staged = staged
        key = camera_path or staged.name
        # Internal RAM captures reuse one camera path for every shot.
        self._key = key if sequence is None else f"{sequence}:{key}"

    @property
    def name(self) -> str:
        return self._staged.name

    @property
    def key(self) -> str:
        return self._key

    def download(self, dest_dir: Path) -> Path:
        if not self._staged.exists():
            raise DeviceError(f"Staged capture {self._staged.name} is gone")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / self._staged.name
        shutil.move(str(self._staged), target)
        return target

    def __repr__(self) -> str:
        return f"GPhoto2File({self._key!r})"


# =============================================================================
# Driver
# =============================================================================


@final
class GPhoto2CameraDriver:
    """Discovers and opens cameras via the ``gphoto2`` executable."""

    __slots__ = ("binary", "command_timeout", "capture_timeout")

    def __init__(
        self,
        binary: str = DEFAULT_BINARY,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        capture_timeout: float = DEFAULT_CAPTURE_TIMEOUT,
    ) -> None:
        self.binary = binary
        self.command_timeout = command_timeout
        self.capture_timeout = capture_timeout

    def __repr__(self) -> str:
        return f"GPhoto2CameraDriver(binary={self.binary!r})"

    def discover(self) -> list[DeviceDescriptor]:
        output = _run(self.binary, ["--auto-detect"], self.command_timeout)
        devices = parse_auto_detect(output)
        logger.debug("gphoto2 auto-detect", count=len(devices))
        return devices

    def open(self, descriptor: DeviceDescriptor) -> GPhoto2CameraHandle:
        port_args = ["--port", descriptor.port] if descriptor.port else []
        _run(
            self.binary,
            [*port_args, "--summary"],
            self.command_timeout,
            default_error=OpenFailedError,
        )
        abilities = _run(
            self.binary,
            [*port_args, "--abilities"],
            self.command_timeout,
            default_error=OpenFailedError,
        )
        capabilities = parse_abilities(abilities)
        logger.info(
            "gphoto2 camera opened",
            device_id=descriptor.device_id,
            capabilities=sorted(c.value for c in capabilities),
        )
        return GPhoto2CameraHandle(self, descriptor, capabilities)


@final
class GPhoto2CameraHandle:
    """Session on one camera port. Blocking; call from worker threads."""

    def __init__(
        self,
        driver: GPhoto2CameraDriver,
        descriptor: DeviceDescriptor,
        capabilities: frozenset[Capability],
    ) -> None:
        self._driver = driver
        self._descriptor = descriptor
        self._capabilities = capabilities
        self._lock = threading.Lock()
        # One gphoto2 process per port at a time; a second one cannot claim USB.
        self._command_lock = threading.Lock()
        self._capture_seq = 0
        self._sink: EventSink | None = None
        self._closed = False
        self._previewing = False
        self._capture_thread: threading.Thread | None = None
        self._staging = Path(tempfile.mkdtemp(prefix="dslr-gphoto2-"))

    def __repr__(self) -> str:
        return f"GPhoto2CameraHandle({self._descriptor.port!r})"

    @property
    def descriptor(self) -> DeviceDescriptor:
        return self._descriptor

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._capabilities

    def _port_args(self) -> list[str]:
        return ["--port", self._descriptor.port] if self._descriptor.port else []

    def _command(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        default_error: type[DeviceError] = FatalDeviceError,
    ) -> str:
        with self._command_lock:
            if self._closed:
                raise FatalDeviceError("Camera handle is closed")
            return _run(
                self._driver.binary,
                [*self._port_args(), *args],
                timeout or self._driver.command_timeout,
                default_error,
            )

    def _capturing(self) -> bool:
        return self._capture_thread is not None and self._capture_thread.is_alive()

    def configure(self, properties: Mapping[str, str]) -> None:
        rejected: list[str] = []
        for name, value in properties.items():
            mapping = PROPERTY_MAP.get(name)
            device_value = mapping[1].get(value) if mapping else None
            if mapping is None or device_value is None:
                rejected.append(name)
                continue
            try:
                self._command(
                    ["--set-config", f"{mapping[0]}={device_value}"],
                    default_error=DeviceError,
                )
            except (FatalDeviceError, NoDeviceError):
                raise
            except DeviceError as e:
                logger.debug("Property rejected by camera", name=name, error=str(e))
                rejected.append(name)
        if rejected:
            raise UnsupportedPropertyError(rejected)

    def start_preview(self) -> None:
        if Capability.PREVIEW not in self._capabilities:
            raise UnsupportedOperationError("Camera has no live view")
        self._previewing = True

    def stop_preview(self) -> None:
        self._previewing = False

    def poll_preview_frame(self) -> bytes | None:
        if not self._previewing:
            return None
        if self._capturing():
            raise DeviceBusyError("Live view paused during capture")
        target = self._staging / "preview.jpg"
        self._command(
            ["--capture-preview", "--filename", str(target), "--force-overwrite"],
            default_error=DeviceBusyError,
        )
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None

    def trigger_capture(self) -> None:
        if Capability.CAPTURE not in self._capabilities:
            raise UnsupportedOperationError("Camera cannot capture")
        with self._lock:
            if self._closed:
                raise FatalDeviceError("Camera handle is closed")
            if self._capturing():
                raise DeviceBusyError("Previous capture still in progress")
            self._capture_seq += 1
            self._capture_thread = threading.Thread(
                target=self._capture_worker,
                args=(self._capture_seq,),
                name=f"gphoto2-capture-{self._descriptor.port}",
                daemon=True,
            )
            self._capture_thread.start()

    def _capture_once(self, sequence: int) -> str:
        return self._command(
            [
                "--capture-image-and-download",
                "--filename",
                str(self._staging / f"{sequence:04d}-%f.%C"),
                "--force-overwrite",
            ],
            timeout=self._driver.capture_timeout,
        )

    def _capture_worker(self, sequence: int) -> None:
        try:
            try:
                output = self._capture_once(sequence)
            except OpenFailedError as e:
                # A preview command that started just before us may still
                # hold the claim; live view is paused now, so try once more.
                logger.warning(
                    "Capture could not claim camera, retrying",
                    port=self._descriptor.port,
                    error=str(e),
                )
                time.sleep(CLAIM_RETRY_DELAY)
                output = self._capture_once(sequence)
        except (FatalDeviceError, NoDeviceError, OpenFailedError) as e:
            logger.error("Capture failed", port=self._descriptor.port, error=str(e))
            self._emit(DeviceEvent(DeviceEventKind.DEVICE_FAULT, detail=str(e)))
            return
        except DeviceError as e:
            logger.warning("Capture rejected", port=self._descriptor.port, error=str(e))
            return

        locations = _LOCATION_RE.findall(output)
        for index, saved in enumerate(_SAVED_RE.findall(output)):
            camera_path = locations[index] if index < len(locations) else None
            self._emit(
                DeviceEvent(
                    DeviceEventKind.FILE_CREATED,
                    file=GPhoto2File(Path(saved.strip()), camera_path, sequence),
                )
            )

    def _emit(self, event: DeviceEvent) -> None:
        with self._lock:
            sink = None if self._closed else self._sink
        if sink is not None:
            sink(event)

    def register_event_sink(self, sink: EventSink | None) -> None:
        with self._lock:
            self._sink = sink

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._previewing = False
            self._sink = None
        shutil.rmtree(self._staging, ignore_errors=True)
        logger.info("gphoto2 camera closed", port=self._descriptor.port)
