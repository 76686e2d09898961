"""Camera driver module.

Tethered DSLR control via the gphoto2 command line (real hardware) and a
digital twin for kiosks and tests without a camera.

Protocols:
    CameraDriver: discovery and opening
    CameraHandle: configure, live view, capture and notifications

Implementations:
    GPhoto2CameraDriver/GPhoto2CameraHandle: cameras supported by libgphoto2
    DigitalTwinCameraDriver/DigitalTwinCameraHandle: simulated camera
"""

from __future__ import annotations

from dslr_photobooth.drivers.cameras.gphoto2 import (
    GPhoto2CameraDriver,
    GPhoto2CameraHandle,
    GPhoto2File,
)
from dslr_photobooth.drivers.cameras.twin import (
    DigitalTwinCameraDriver,
    DigitalTwinCameraHandle,
    DigitalTwinConfig,
    TwinFaults,
    TwinFile,
)
from dslr_photobooth.drivers.cameras.types import (
    ALL_CAPABILITIES,
    CameraDriver,
    CameraFile,
    CameraHandle,
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
    TransientDeviceError,
    UnsupportedOperationError,
    UnsupportedPropertyError,
)

__all__ = [
    # Protocols
    "CameraDriver",
    "CameraHandle",
    "CameraFile",
    "EventSink",
    # Types
    "ALL_CAPABILITIES",
    "Capability",
    "DeviceDescriptor",
    "DeviceEvent",
    "DeviceEventKind",
    # Errors
    "DeviceBusyError",
    "DeviceError",
    "DeviceTimeoutError",
    "FatalDeviceError",
    "NoDeviceError",
    "OpenFailedError",
    "TransientDeviceError",
    "UnsupportedOperationError",
    "UnsupportedPropertyError",
    # Implementations
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraHandle",
    "DigitalTwinConfig",
    "GPhoto2CameraDriver",
    "GPhoto2CameraHandle",
    "GPhoto2File",
    "TwinFaults",
    "TwinFile",
]
