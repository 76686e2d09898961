"""Camera driver type definitions and protocols.

Base types shared by every camera driver and by the session layer. Kept
in a separate module so driver implementations and the device layer can
both import them without circular imports.

Types defined here:
- Capability / DeviceDescriptor: what discovery reports
- DeviceEventKind / DeviceEvent / CameraFile: push notifications
- CameraHandle / CameraDriver: driver protocols
- DeviceError hierarchy: the failure taxonomy drivers raise

Drivers never retry internally. Every failure is raised to the caller,
which owns recovery policy.

Example:
    from dslr_photobooth.drivers.cameras.types import (
        CameraDriver,
        CameraHandle,
        DeviceEvent,
    )

    def on_event(event: DeviceEvent) -> None:
        if event.is_image_ready:
            path = event.file.download(Path("images"))
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

__all__ = [
    "Capability",
    "CameraDriver",
    "CameraFile",
    "CameraHandle",
    "DeviceBusyError",
    "DeviceDescriptor",
    "DeviceError",
    "DeviceEvent",
    "DeviceEventKind",
    "DeviceTimeoutError",
    "EventSink",
    "FatalDeviceError",
    "NoDeviceError",
    "OpenFailedError",
    "TransientDeviceError",
    "UnsupportedOperationError",
    "UnsupportedPropertyError",
    "ALL_CAPABILITIES",
]


# =============================================================================
# Errors
# =============================================================================


class DeviceError(Exception):
    """Base exception for camera driver failures."""


class NoDeviceError(DeviceError):
    """No camera found, or the opened camera is no longer reachable."""


class OpenFailedError(DeviceError):
    """The camera was discovered but a session could not be opened."""


class UnsupportedPropertyError(DeviceError):
    """One or more properties could not be applied.

    Raised by ``configure`` after every supported property has been set,
    so a partial failure still leaves the device tuned as far as possible.
    """

    def __init__(self, properties: Iterable[str], message: str | None = None):
        self.properties: tuple[str, ...] = tuple(properties)
        super().__init__(
            message or f"Unsupported properties: {', '.join(self.properties)}"
        )


class UnsupportedOperationError(DeviceError):
    """The device does not advertise the capability for this call."""


class TransientDeviceError(DeviceError):
    """Momentary failure (e.g. a preview frame that was not ready)."""


class DeviceBusyError(TransientDeviceError):
    """The device refused a request because it is still working."""


class FatalDeviceError(DeviceError):
    """The device or its driver is no longer usable; the session must recover."""


class DeviceTimeoutError(FatalDeviceError):
    """A device call did not return within its time bound."""


# =============================================================================
# Discovery
# =============================================================================


class Capability(Enum):
    """Optional feature set a device advertises."""

    CONFIGURE = "configure"
    PREVIEW = "preview"
    CAPTURE = "capture"


ALL_CAPABILITIES: frozenset[Capability] = frozenset(Capability)


@dataclass(frozen=True, slots=True)
class DeviceDescriptor:
    """A camera found by discovery.

    Attributes:
        device_id: Driver-specific identifier, stable while plugged in.
        name: Human-readable model name.
        port: Connection path (e.g. ``usb:001,004``), empty if not applicable.
        capabilities: Features the device advertises.
    """

    device_id: str
    name: str
    port: str = ""
    capabilities: frozenset[Capability] = ALL_CAPABILITIES

    def to_dict(self) -> dict[str, object]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "port": self.port,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


# =============================================================================
# Events
# =============================================================================


class DeviceEventKind(Enum):
    """Kinds of notification a driver pushes to its event sink."""

    FILE_CREATED = "file_created"
    DOWNLOAD_REQUESTED = "download_requested"
    DEVICE_FAULT = "device_fault"
    PROPERTY_CHANGED = "property_changed"


@runtime_checkable
class CameraFile(Protocol):  # pragma: no cover
    """A file stored on (or announced by) the camera."""

    @property
    def name(self) -> str:
        """File name as reported by the camera, e.g. ``IMG_0042.JPG``."""
        ...

    @property
    def key(self) -> str:
        """Identity of the logical image; equal for repeated notifications."""
        ...

    def download(self, dest_dir: Path) -> Path:
        """Copy the file into ``dest_dir`` and return the local path.

        Raises:
            DeviceError: If the transfer fails.
            OSError: If the local file cannot be written.
        """
        ...


@dataclass(frozen=True, slots=True)
class DeviceEvent:
    """A push notification from the device.

    ``file`` is set for FILE_CREATED and DOWNLOAD_REQUESTED, ``detail``
    carries a human-readable reason for DEVICE_FAULT.
    """

    kind: DeviceEventKind
    file: CameraFile | None = None
    detail: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_image_ready(self) -> bool:
        return self.file is not None and self.kind in (
            DeviceEventKind.FILE_CREATED,
            DeviceEventKind.DOWNLOAD_REQUESTED,
        )


EventSink = Callable[[DeviceEvent], None]


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class CameraHandle(Protocol):  # pragma: no cover
    """An opened camera session.

    Owned by exactly one session controller. Methods are blocking and may
    be called from worker threads; the event sink may be invoked from any
    thread the driver owns.

    Business context: The tethered DSLR is the one piece of hardware the
    kiosk cannot function without, and consumer camera SDKs hang or drop
    the USB claim under sustained use. Keeping every call behind this
    protocol lets the session controller sequence, time out and recover
    the device identically for the gphoto2 backend and the digital twin.
    """

    @property
    def descriptor(self) -> DeviceDescriptor:
        ...

    @property
    def capabilities(self) -> frozenset[Capability]:
        ...

    def configure(self, properties: Mapping[str, str]) -> None:
        """Apply a property map.

        Args:
            properties: Canonical property names to values, e.g.
                ``{"save-destination": "host", "image-quality": "high"}``.

        Raises:
            UnsupportedPropertyError: Listing properties that were skipped.
            NoDeviceError: If the device disappeared.
            FatalDeviceError: If the driver stopped responding.
        """
        ...

    def start_preview(self) -> None:
        """Enable live view.

        Raises:
            UnsupportedOperationError: If the device has no live view.
        """
        ...

    def stop_preview(self) -> None:
        ...

    def poll_preview_frame(self) -> bytes | None:
        """Return the latest live-view JPEG, or None if no frame is ready.

        Raises:
            TransientDeviceError: Frame could not be read this time.
            FatalDeviceError: Driver stopped responding.
        """
        ...

    def trigger_capture(self) -> None:
        """Release the shutter. The image arrives later via the event sink.

        Raises:
            DeviceBusyError: Previous capture still in progress.
            NoDeviceError: Device disappeared.
        """
        ...

    def register_event_sink(self, sink: EventSink | None) -> None:
        """Install the callback for device notifications; None removes it."""
        ...

    def close(self) -> None:
        """Release the device. Idempotent and never raises."""
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Discovers cameras and opens sessions on them."""

    def discover(self) -> list[DeviceDescriptor]:
        """List cameras currently attached. Empty list if none."""
        ...

    def open(self, descriptor: DeviceDescriptor) -> CameraHandle:
        """Open a session on a discovered camera.

        Raises:
            NoDeviceError: The camera is no longer present.
            OpenFailedError: The camera could not be claimed.
        """
        ...
