"""Driver configuration and factory.

Chooses between the real camera stack (gphoto2 + process reclaimer) and
the digital twin, and builds the matching driver and reclaimer:

    from dslr_photobooth.drivers import config

    config.use_hardware()
    driver = config.get_factory().create_camera_driver()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from dslr_photobooth.drivers.cameras import (
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    GPhoto2CameraDriver,
    TwinFaults,
)
from dslr_photobooth.drivers.reclaimer import (
    DEFAULT_PATTERNS,
    DEFAULT_SETTLE_SECONDS,
    NullReclaimer,
    ProcessReclaimer,
    Reclaimer,
)


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"
    DIGITAL_TWIN = "digital_twin"


@dataclass
class DriverConfig:
    """Configuration for driver construction.

    Attributes:
        mode: HARDWARE for a real tethered camera, DIGITAL_TWIN to simulate.
        gphoto2_binary: gphoto2 executable name or path.
        command_timeout: Upper bound in seconds for one gphoto2 command.
        capture_timeout: Upper bound for capture-and-download.
        reclaim_patterns: Process patterns swept before re-acquiring.
        settle_seconds: Wait after a reclaim sweep.
        twin: Geometry and timing of the simulated camera.
        twin_faults: Failure script for the simulated camera.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN
    gphoto2_binary: str = "gphoto2"
    command_timeout: float = 10.0
    capture_timeout: float = 30.0
    reclaim_patterns: tuple[str, ...] = DEFAULT_PATTERNS
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    twin: DigitalTwinConfig = field(default_factory=DigitalTwinConfig)
    twin_faults: TwinFaults = field(default_factory=TwinFaults)


class DriverFactory:
    """Creates camera drivers and reclaimers for the configured mode.

    Thread Safety:
        Not thread-safe. Configure once at startup.
    """

    def __init__(self, config: DriverConfig | None = None):
        self.config = config or DriverConfig()

    def create_camera_driver(self) -> CameraDriver:
        """Return a GPhoto2CameraDriver or a DigitalTwinCameraDriver."""
        if self.config.mode == DriverMode.HARDWARE:
            return GPhoto2CameraDriver(
                binary=self.config.gphoto2_binary,
                command_timeout=self.config.command_timeout,
                capture_timeout=self.config.capture_timeout,
            )
        return DigitalTwinCameraDriver(
            config=self.config.twin, faults=self.config.twin_faults
        )

    def create_reclaimer(self) -> Reclaimer:
        """Return the psutil reclaimer for hardware, a no-op for the twin.

        Sweeping the process table is pointless for a simulated camera and
        would kill a desktop user's gphoto2 helpers during development.
        """
        if self.config.mode == DriverMode.HARDWARE:
            return ProcessReclaimer(
                patterns=self.config.reclaim_patterns,
                settle_seconds=self.config.settle_seconds,
            )
        return NullReclaimer()


# =============================================================================
# Global configuration
# =============================================================================

# Configure once at startup, before the session controller is created.
_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the process-wide factory, digital twin mode by default."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig) -> None:
    """Replace the process-wide factory."""
    global _factory
    _factory = DriverFactory(config)


def use_digital_twin() -> None:
    configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware() -> None:
    configure(DriverConfig(mode=DriverMode.HARDWARE))
