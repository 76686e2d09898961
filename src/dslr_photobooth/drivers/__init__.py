"""Camera drivers and OS-level device housekeeping.

Supports two modes:
- HARDWARE: tethered camera through gphoto2, stale processes reclaimed with psutil
- DIGITAL_TWIN: simulated camera, no process sweeping

Use drivers.config to switch modes:
    from dslr_photobooth.drivers import config
    config.use_digital_twin()  # or config.use_hardware()
"""

from dslr_photobooth.drivers import cameras, config
from dslr_photobooth.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)
from dslr_photobooth.drivers.reclaimer import (
    NullReclaimer,
    ProcessReclaimer,
    ReclaimReport,
    Reclaimer,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    # Configuration
    "DriverMode",
    "DriverConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_digital_twin",
    "use_hardware",
    # Reclaim
    "NullReclaimer",
    "ProcessReclaimer",
    "ReclaimReport",
    "Reclaimer",
]
