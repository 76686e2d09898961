"""Observability for dslr-photobooth: structured logging and session stats.

Example:
    from dslr_photobooth.observability import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(device_id="usb:001,004"):
        logger.info("Preview started", interval_ms=50)
"""

from dslr_photobooth.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from dslr_photobooth.observability.stats import (
    SessionStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "SessionStats",
    "StatsSummary",
]
