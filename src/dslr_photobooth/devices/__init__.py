"""Session layer - camera ownership, live view and capture delivery."""

from dslr_photobooth.devices.dispatcher import CaptureDispatcher
from dslr_photobooth.devices.events import (
    CAPTURE_READY,
    PREVIEW_FRAME,
    SESSION_STATUS,
    EventPublisher,
    NullPublisher,
    OutboundEvent,
)
from dslr_photobooth.devices.executor import DeviceExecutor
from dslr_photobooth.devices.preview import PreviewStreamer
from dslr_photobooth.devices.session import (
    DEFAULT_PROPERTIES,
    ExponentialBackoff,
    FixedBackoff,
    NoActiveSessionError,
    RetryPolicy,
    SessionConfig,
    SessionController,
    SessionError,
    SessionState,
    SessionStatus,
    get_controller,
    init_controller,
    shutdown_controller,
)

__all__ = [
    # Events
    "CAPTURE_READY",
    "PREVIEW_FRAME",
    "SESSION_STATUS",
    "EventPublisher",
    "NullPublisher",
    "OutboundEvent",
    # Workers
    "CaptureDispatcher",
    "DeviceExecutor",
    "PreviewStreamer",
    # Session
    "DEFAULT_PROPERTIES",
    "ExponentialBackoff",
    "FixedBackoff",
    "NoActiveSessionError",
    "RetryPolicy",
    "SessionConfig",
    "SessionController",
    "SessionError",
    "SessionState",
    "SessionStatus",
    # Accessor
    "get_controller",
    "init_controller",
    "shutdown_controller",
]
